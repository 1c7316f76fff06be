from __future__ import annotations

import datetime as dt
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Type

import httpx

from notifyhub.config import Settings
from notifyhub.errors import (
    HubError,
    TokenRefreshFailed,
    UpstreamFetchFailed,
    ValidationError,
)
from notifyhub.models.integration import Integration, ProviderType

logger = logging.getLogger(__name__)

BODY_PREVIEW_LIMIT = 200
TITLE_LIMIT = 255


@dataclass
class TokenGrant:
    """Result of a code exchange or a refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None  # None: provider token does not expire
    raw_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EventRef:
    """A single provider event, either full content or a pointer to it.

    ``payload`` holds the provider-native content when the provider delivered
    it. ``reference`` holds whatever the provider sent when it only points at
    the content (a webhook carrying an id), in which case the adapter has to
    fetch the event before it can be normalized.
    """

    source_id: str
    payload: Optional[Dict[str, Any]] = None
    reference: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_reference(self) -> bool:
        return self.payload is None


@dataclass
class NormalizedPayload:
    source_id: str
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[dt.datetime] = None


@dataclass
class WebhookEnvelope:
    """What an inbound webhook asks the pipeline to do."""

    routing_key: Optional[str] = None
    events: List[EventRef] = field(default_factory=list)
    # Provider only signalled "something changed": pull the recent page.
    list_recent: bool = False
    # Acknowledge without processing (handshakes, sync pings, ignored events).
    ack_only: bool = False
    response: Optional[Dict[str, Any]] = None
    reason: str = ""


def truncate(text: Optional[str], limit: int = BODY_PREVIEW_LIMIT) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def parse_json(raw_body: bytes | str) -> Any:
    try:
        return json.loads(raw_body or b"")
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid JSON payload", details=str(exc)) from exc


def response_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class ProviderAdapter(ABC):
    """Interface every provider implementation satisfies.

    One adapter instance per provider type is built at start-up from
    ``Settings``. Adapters are stateless apart from configuration, so the same
    instance serves concurrent requests.
    """

    provider_type: ProviderType
    supports_refresh: bool = True

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._http_client = http_client

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        error_cls: Type[HubError] = UpstreamFetchFailed,
        **kwargs: Any,
    ) -> httpx.Response:
        """Perform one outbound call with a bounded timeout.

        Transport failures and timeouts surface as ``error_cls``; there is no
        retry within the same invocation.
        """
        client = self._http_client
        should_close = False
        if client is None:
            client = httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
            should_close = True
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise error_cls(f"{self.provider_type.value} request timed out", details=url) from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"{self.provider_type.value} request failed: {exc}", details=url) from exc
        finally:
            if should_close:
                await client.aclose()

    async def _get_json(self, url: str, access_token: str, **kwargs: Any) -> Any:
        resp = await self._send("GET", url, headers=self._auth_headers(access_token), **kwargs)
        return self._checked(resp)

    async def _post_json(self, url: str, access_token: str, **kwargs: Any) -> Any:
        resp = await self._send("POST", url, headers=self._auth_headers(access_token), **kwargs)
        return self._checked(resp)

    def _checked(self, resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            body = response_body(resp)
            logger.error("%s API error %s: %s", self.provider_type.value, resp.status_code, body)
            raise UpstreamFetchFailed(
                f"{self.provider_type.value} API returned {resp.status_code}", details=body
            )
        body = response_body(resp)
        if not isinstance(body, (dict, list)):
            logger.error("%s API returned a non-JSON body: %.200s", self.provider_type.value, body)
            raise UpstreamFetchFailed(f"{self.provider_type.value} API returned a non-JSON body")
        return body

    async def _post_token_form(self, url: str, data: Dict[str, str], error_cls: Type[HubError]) -> Dict[str, Any]:
        resp = await self._send(
            "POST",
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            error_cls=error_cls,
        )
        body = response_body(resp)
        if resp.status_code >= 400 or not isinstance(body, dict):
            logger.error("%s token endpoint failed (%s): %s", self.provider_type.value, resp.status_code, body)
            raise error_cls(details=body)
        return body

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Trade an authorization code for tokens."""

    async def refresh(self, refresh_token: str) -> TokenGrant:
        raise TokenRefreshFailed(f"{self.provider_type.value} tokens cannot be refreshed")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_recent_events(self, access_token: str, page_size: int) -> List[EventRef]:
        """Most recent notification-worthy events, newest first."""

    @abstractmethod
    async def fetch_event(self, access_token: str, event_ref: EventRef) -> NormalizedPayload:
        """Fetch the full content behind a reference and normalize it."""

    @abstractmethod
    def normalize(self, event_ref: EventRef) -> NormalizedPayload:
        """Map an event that already carries its content."""

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_inbound_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return True

    @abstractmethod
    def parse_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> List[WebhookEnvelope]:
        """Split an inbound delivery into routed envelopes."""

    @abstractmethod
    def matches_integration(self, integration: Integration, routing_key: str) -> bool:
        """Whether an inbound routing key belongs to ``integration``."""

    # ------------------------------------------------------------------
    # Change subscriptions
    # ------------------------------------------------------------------

    @property
    def needs_change_subscription(self) -> bool:
        return False

    async def subscribe(self, access_token: str, integration: Integration) -> Optional[Dict[str, Any]]:
        """Register for change notifications; returns metadata to merge."""
        return None

    def _token_grant(self, body: Dict[str, Any], error_cls: Type[HubError]) -> TokenGrant:
        access_token = body.get("access_token")
        if not access_token:
            raise error_cls("Provider response did not contain an access token", details=body)
        expires_in = body.get("expires_in")
        return TokenGrant(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            raw_metadata={},
        )
