from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from notifyhub.errors import TokenExchangeFailed, UpstreamFetchFailed
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.providers.base import (
    EventRef,
    NormalizedPayload,
    ProviderAdapter,
    TokenGrant,
    WebhookEnvelope,
    header,
    parse_json,
    response_body,
    truncate,
)
from notifyhub.timeutil import from_epoch_seconds

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"
SIGNATURE_VERSION = "v0"
REPLAY_WINDOW_SECONDS = 300
HISTORY_CHANNEL_LIMIT = 5

EVENT_TITLES = {
    "message": "New message in Slack",
    "app_mention": "You were mentioned in Slack",
    "reaction_added": "Reaction added to your message in Slack",
}


class SlackAdapter(ProviderAdapter):
    """Slack Web API + Events API.

    Slack bot tokens do not expire and there is no refresh grant, so the
    integration is stored with a nominal expiry and skipped by the sweep.
    """

    provider_type = ProviderType.SLACK
    supports_refresh = False

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        resp = await self._send(
            "POST",
            f"{SLACK_API_BASE}/oauth.v2.access",
            data={
                "code": code,
                "client_id": self.settings.slack_client_id,
                "client_secret": self.settings.slack_client_secret,
                "redirect_uri": redirect_uri,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            error_cls=TokenExchangeFailed,
        )
        data = response_body(resp)
        # Slack answers 200 with ok=false on failure
        if resp.status_code >= 400 or not isinstance(data, dict) or not data.get("ok"):
            logger.error("Slack token exchange failed: %s", data)
            details = data.get("error") if isinstance(data, dict) else data
            raise TokenExchangeFailed(details=details)

        grant = self._token_grant(data, TokenExchangeFailed)
        team = data.get("team") or {}
        grant.raw_metadata = {
            "team_id": team.get("id"),
            "team_name": team.get("name"),
            "authed_user_id": (data.get("authed_user") or {}).get("id"),
            "bot_user_id": data.get("bot_user_id"),
            "scopes": [s for s in (data.get("scope") or "").split(",") if s],
        }
        return grant

    # ------------------------------------------------------------------
    # Web API helpers
    # ------------------------------------------------------------------

    async def _call(self, method: str, access_token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._get_json(f"{SLACK_API_BASE}/{method}", access_token, params=params)
        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error", "slack_error") if isinstance(data, dict) else data
            raise UpstreamFetchFailed(f"Slack {method} failed", details=error)
        return data

    async def list_recent_events(self, access_token: str, page_size: int) -> List[EventRef]:
        channels = await self._call(
            "users.conversations",
            access_token,
            {"types": "public_channel,private_channel", "exclude_archived": "true", "limit": 100},
        )
        messages: List[Dict[str, Any]] = []
        for channel in (channels.get("channels") or [])[:HISTORY_CHANNEL_LIMIT]:
            channel_id = channel.get("id")
            history = await self._call(
                "conversations.history", access_token, {"channel": channel_id, "limit": page_size}
            )
            for msg in history.get("messages", []):
                if msg.get("subtype") or not msg.get("user") or not msg.get("ts"):
                    continue
                messages.append({**msg, "type": "message", "channel": channel_id})

        messages.sort(key=lambda m: float(m["ts"]), reverse=True)
        return [
            EventRef(source_id=self._source_id(msg["channel"], msg["ts"]), payload=msg)
            for msg in messages[:page_size]
        ]

    async def fetch_event(self, access_token: str, event_ref: EventRef) -> NormalizedPayload:
        channel_id, _, ts = event_ref.source_id.partition(":")
        history = await self._call(
            "conversations.history",
            access_token,
            {"channel": channel_id, "latest": ts, "inclusive": "true", "limit": 1},
        )
        found = history.get("messages") or []
        if not found:
            raise UpstreamFetchFailed("Slack message not found", details=event_ref.source_id)
        payload = {**found[0], "type": "message", "channel": channel_id}
        return self.normalize(EventRef(source_id=event_ref.source_id, payload=payload))

    @staticmethod
    def _source_id(channel_id: Optional[str], ts: Optional[str]) -> str:
        return f"{channel_id}:{ts}"

    def normalize(self, event_ref: EventRef) -> NormalizedPayload:
        event = event_ref.payload or {}
        event_type = event.get("type", "message")
        title = EVENT_TITLES.get(event_type, "New activity in Slack")
        if event_type == "reaction_added":
            body = f":{event.get('reaction', '')}: reaction from <@{event.get('user')}>"
        else:
            body = event.get("text") or "New activity in Slack"
        ts = event.get("ts") or event.get("event_ts")
        item = event.get("item") or {}

        return NormalizedPayload(
            source_id=event_ref.source_id,
            title=title,
            body=truncate(body),
            metadata={
                "channel": event.get("channel") or item.get("channel"),
                "user": event.get("user"),
                "event_type": event_type,
                "team": event.get("team"),
                "timestamp": ts,
                "thread_ts": event.get("thread_ts"),
            },
            occurred_at=from_epoch_seconds(ts),
        )

    # ------------------------------------------------------------------
    # Events API
    # ------------------------------------------------------------------

    def verify_inbound_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """HMAC-SHA256 over ``v0:{timestamp}:{body}`` with a 300 s replay window."""
        secret = self.settings.slack_signing_secret
        timestamp = header(headers, "X-Slack-Request-Timestamp")
        signature = header(headers, "X-Slack-Signature")
        if not secret or not timestamp or not signature:
            return False
        try:
            if abs(time.time() - int(timestamp)) > REPLAY_WINDOW_SECONDS:
                return False
        except ValueError:
            return False

        # Signed over the raw bytes; the body is not decoded before it is trusted
        body = raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")
        base = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
        expected = f"{SIGNATURE_VERSION}=" + hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def parse_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> List[WebhookEnvelope]:
        payload = parse_json(raw_body)
        if not isinstance(payload, dict):
            return [WebhookEnvelope(ack_only=True, reason="unexpected payload")]

        if payload.get("type") == "url_verification":
            return [WebhookEnvelope(ack_only=True, response={"challenge": payload.get("challenge")})]
        if payload.get("type") != "event_callback":
            return [WebhookEnvelope(ack_only=True, reason=f"ignored type {payload.get('type')}")]

        event = payload.get("event") or {}
        ref = self._event_ref(event)
        if ref is None:
            logger.info("Unhandled Slack event type: %s", event.get("type"))
            return [WebhookEnvelope(ack_only=True, reason=f"unhandled event {event.get('type')}")]
        return [WebhookEnvelope(routing_key=payload.get("team_id"), events=[ref])]

    def _event_ref(self, event: Dict[str, Any]) -> Optional[EventRef]:
        event_type = event.get("type")
        if event_type == "message":
            if event.get("subtype") or not event.get("user"):
                return None
            return EventRef(source_id=self._source_id(event.get("channel"), event.get("ts")), payload=event)
        if event_type == "app_mention":
            return EventRef(source_id=self._source_id(event.get("channel"), event.get("ts")), payload=event)
        if event_type == "reaction_added":
            item = event.get("item") or {}
            return EventRef(
                source_id=self._source_id(item.get("channel"), event.get("event_ts")),
                payload=event,
            )
        return None

    def matches_integration(self, integration: Integration, routing_key: str) -> bool:
        return (integration.metadata_ or {}).get("team_id") == routing_key
