from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from supabase import Client, create_client

from notifyhub.config import get_settings

settings = get_settings()

# SQLAlchemy engine & session
engine = create_async_engine(settings.database_url, echo=False, future=True)
AsyncSessionLocal = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

# Declarative base for models
Base = declarative_base()


async def get_db():
    """FastAPI dependency that yields an async database session."""
    async with AsyncSessionLocal() as session:
        yield session


# Supabase client (optional, used to resolve end-user bearer tokens)
SUPABASE: Optional[Client] = None
if settings.supabase_url and settings.supabase_service_role_key:
    SUPABASE = create_client(settings.supabase_url, settings.supabase_service_role_key)
