from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import time
import uuid
from typing import AsyncGenerator, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notifyhub.config import Settings
from notifyhub.crypto import FernetTokenCipher, TokenCipher
from notifyhub.db import Base
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.models.notification import Notification  # noqa: F401  (registers table)
from notifyhub.providers.registry import AdapterRegistry, build_adapters
from notifyhub.services.token_store import TokenStore
from notifyhub.timeutil import utcnow

SLACK_SIGNING_SECRET = "slack-signing-secret"

# In-memory database shared by every connection of one test
TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeProviderAPI:
    """Stub for every provider endpoint, served through ``httpx.MockTransport``.

    Routes match on method and URL without the query string. Unrouted calls
    answer 404 so adapters exercise their error paths.
    """

    def __init__(self) -> None:
        self.routes: List[Tuple[str, str, Callable[[httpx.Request], httpx.Response]]] = []
        self.calls: List[httpx.Request] = []

    def add(
        self,
        method: str,
        url: str,
        json_body=None,
        status: int = 200,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> None:
        if handler is None:
            def handler(request: httpx.Request, _body=json_body, _status=status) -> httpx.Response:
                return httpx.Response(_status, json=_body)
        self.routes.append((method.upper(), url, handler))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url = str(request.url).split("?", 1)[0]
        # Latest registration wins
        for method, route_url, handler in reversed(self.routes):
            if request.method == method and url == route_url:
                return handler(request)
        return httpx.Response(404, json={"error": "not stubbed", "url": url})

    def calls_to(self, url: str) -> List[httpx.Request]:
        return [c for c in self.calls if str(c.url).split("?", 1)[0] == url]


def form_data(request: httpx.Request) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def slack_headers(body: bytes, secret: str = SLACK_SIGNING_SECRET, timestamp: Optional[int] = None) -> Dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    base = f"v0:{ts}:".encode() + body
    signature = "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return {
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": signature,
        "Content-Type": "application/json",
    }


@pytest.fixture
def settings() -> Settings:
    return Settings(
        google_client_id="google-client",
        google_client_secret="google-secret",
        slack_client_id="slack-client",
        slack_client_secret="slack-secret",
        slack_signing_secret=SLACK_SIGNING_SECRET,
        hubspot_client_id="hubspot-client",
        hubspot_client_secret="hubspot-secret",
        public_base_url="https://hub.example.com",
        frontend_url="https://app.example.com",
    )


@pytest.fixture
def fake_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def http_client(fake_api: FakeProviderAPI) -> httpx.AsyncClient:
    # MockTransport holds no connections, so the client needs no closing
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handle))


@pytest.fixture
def adapters(settings: Settings, http_client: httpx.AsyncClient) -> AdapterRegistry:
    return build_adapters(settings, http_client=http_client)


@pytest.fixture
def cipher() -> TokenCipher:
    return FernetTokenCipher(Fernet.generate_key())


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[Callable[[], AsyncSession], None]:
    """Fresh schema per test on a single shared in-memory connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_integration(db_session: AsyncSession, cipher: TokenCipher):
    """Store an integration directly, bypassing the OAuth exchange."""

    async def _make(
        provider_type: ProviderType,
        user_id: Optional[uuid.UUID] = None,
        *,
        access_token: str = "access-token",
        refresh_token: Optional[str] = "refresh-token",
        expires_in: Optional[int] = 3600,
        expires_at: Optional[dt.datetime] = None,
        metadata: Optional[dict] = None,
    ) -> Integration:
        if expires_at is None and expires_in is not None:
            expires_at = utcnow() + dt.timedelta(seconds=expires_in)
        return await TokenStore(db_session).upsert_integration(
            user_id=user_id or uuid.uuid4(),
            provider_type=provider_type,
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt_optional(refresh_token),
            expires_at=expires_at,
            metadata=metadata or {},
        )

    return _make


@pytest.fixture
def sample_gmail_message() -> dict:
    return {
        "id": "msg-1",
        "threadId": "thread-1",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Quarterly numbers are in, see attached",
        "internalDate": "1700000000000",
        "payload": {
            "headers": [
                {"name": "Subject", "value": "Q3 report"},
                {"name": "From", "value": "Alice Smith <alice@example.com>"},
                {"name": "Date", "value": "Tue, 14 Nov 2023 22:13:20 +0000"},
            ]
        },
    }


@pytest.fixture
def slack_message_event() -> dict:
    return {
        "type": "event_callback",
        "team_id": "T123",
        "event": {
            "type": "message",
            "user": "U1",
            "text": "Deploy finished",
            "channel": "C1",
            "ts": "1700000000.000100",
        },
    }


def dumps(payload) -> bytes:
    return json.dumps(payload).encode()
