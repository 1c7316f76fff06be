from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from typing import Any, Dict, List, Mapping, Optional

from notifyhub.errors import TokenExchangeFailed, TokenRefreshFailed, UpstreamFetchFailed, ValidationError
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.providers.base import (
    EventRef,
    NormalizedPayload,
    ProviderAdapter,
    TokenGrant,
    WebhookEnvelope,
    header,
    parse_json,
    truncate,
)
from notifyhub.timeutil import from_epoch_millis, parse_iso

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
DRIVE_BASE_URL = "https://www.googleapis.com/drive/v3"

DRIVE_FILE_FIELDS = (
    "id,name,mimeType,modifiedTime,webViewLink,"
    "lastModifyingUser(displayName,emailAddress),owners(displayName,emailAddress)"
)
DRIVE_WATCH_TTL_MS = 7 * 24 * 60 * 60 * 1000

_ADDRESS_RE = re.compile(r"<(.+?)>")


class GoogleAdapter(ProviderAdapter):
    """OAuth handling shared by the Gmail and Drive adapters."""

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        body = await self._post_token_form(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            TokenExchangeFailed,
        )
        grant = self._token_grant(body, TokenExchangeFailed)
        grant.raw_metadata = {
            "scopes": (body.get("scope") or "").split(),
            "token_type": body.get("token_type"),
        }
        email = await self._account_email(grant.access_token)
        if email:
            grant.raw_metadata["email"] = email
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        body = await self._post_token_form(
            GOOGLE_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
            },
            TokenRefreshFailed,
        )
        return self._token_grant(body, TokenRefreshFailed)

    async def _account_email(self, access_token: str) -> Optional[str]:
        """Best-effort lookup of the connected account address."""
        try:
            info = await self._get_json(GOOGLE_USERINFO_URL, access_token)
        except UpstreamFetchFailed as exc:
            logger.warning("Could not read Google account info: %s", exc.message)
            return None
        return info.get("email") if isinstance(info, dict) else None


class GmailAdapter(GoogleAdapter):
    provider_type = ProviderType.GMAIL

    async def list_recent_events(self, access_token: str, page_size: int) -> List[EventRef]:
        data = await self._get_json(
            f"{GMAIL_BASE_URL}/messages",
            access_token,
            params={"maxResults": page_size, "labelIds": "INBOX"},
        )
        return [
            EventRef(source_id=message["id"], reference={"thread_id": message.get("threadId")})
            for message in data.get("messages") or []
            if message.get("id")
        ]

    async def fetch_event(self, access_token: str, event_ref: EventRef) -> NormalizedPayload:
        message = await self._get_json(
            f"{GMAIL_BASE_URL}/messages/{event_ref.source_id}",
            access_token,
            params={"format": "full"},
        )
        return self.normalize(EventRef(source_id=event_ref.source_id, payload=message))

    def normalize(self, event_ref: EventRef) -> NormalizedPayload:
        message = event_ref.payload or {}
        headers = {h.get("name"): h.get("value") for h in (message.get("payload") or {}).get("headers", [])}
        subject = headers.get("Subject") or "(No Subject)"
        sender = headers.get("From") or "Unknown"
        match = _ADDRESS_RE.search(sender)
        from_email = match.group(1) if match else sender
        from_name = _ADDRESS_RE.sub("", sender).strip().strip('"') or from_email
        snippet = message.get("snippet") or ""

        return NormalizedPayload(
            source_id=event_ref.source_id,
            title=truncate(subject, 255),
            body=truncate(f"From: {from_name}\n\n{snippet}"),
            metadata={
                "message_id": event_ref.source_id,
                "subject": subject,
                "from": from_email,
                "from_name": from_name,
                "date": headers.get("Date"),
                "thread_id": message.get("threadId"),
                "labels": message.get("labelIds") or [],
                "internal_date": message.get("internalDate"),
            },
            occurred_at=from_epoch_millis(message.get("internalDate")),
        )

    def parse_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> List[WebhookEnvelope]:
        envelope = parse_json(raw_body)
        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, dict) or not message.get("data"):
            raise ValidationError("Invalid Pub/Sub push payload")
        try:
            decoded = json.loads(base64.b64decode(message["data"]))
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Invalid Pub/Sub message data", details=str(exc)) from exc

        email = decoded.get("emailAddress")
        if not email:
            return [WebhookEnvelope(ack_only=True, reason="missing emailAddress")]
        return [WebhookEnvelope(routing_key=email, list_recent=True)]

    def matches_integration(self, integration: Integration, routing_key: str) -> bool:
        email = (integration.metadata_ or {}).get("email")
        return bool(email) and email.lower() == routing_key.lower()

    @property
    def needs_change_subscription(self) -> bool:
        return bool(self.settings.gmail_pubsub_topic)

    async def subscribe(self, access_token: str, integration: Integration) -> Optional[Dict[str, Any]]:
        if not self.settings.gmail_pubsub_topic:
            return None
        data = await self._post_json(
            f"{GMAIL_BASE_URL}/watch",
            access_token,
            json={"topicName": self.settings.gmail_pubsub_topic, "labelIds": ["INBOX"]},
        )
        return {"history_id": data.get("historyId"), "watch_expiration": data.get("expiration")}


class GoogleDriveAdapter(GoogleAdapter):
    provider_type = ProviderType.GOOGLE_DRIVE

    def verify_inbound_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return bool(header(headers, "X-Goog-Channel-ID") and header(headers, "X-Goog-Resource-State"))

    def parse_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> List[WebhookEnvelope]:
        channel_id = header(headers, "X-Goog-Channel-ID")
        state = header(headers, "X-Goog-Resource-State")
        if state == "sync":
            return [WebhookEnvelope(ack_only=True, reason="sync acknowledged")]
        return [WebhookEnvelope(routing_key=channel_id, list_recent=True)]

    def matches_integration(self, integration: Integration, routing_key: str) -> bool:
        if (integration.metadata_ or {}).get("channel_id") == routing_key:
            return True
        # Channels registered as drive-{user_id}-{millis}
        return routing_key.startswith(f"drive-{integration.user_id}-")

    async def list_recent_events(self, access_token: str, page_size: int) -> List[EventRef]:
        data = await self._get_json(
            f"{DRIVE_BASE_URL}/files",
            access_token,
            params={
                "orderBy": "modifiedTime desc",
                "pageSize": page_size,
                "fields": f"files({DRIVE_FILE_FIELDS})",
            },
        )
        return [
            EventRef(source_id=self._source_id(item), payload=item)
            for item in data.get("files") or []
            if item.get("id")
        ]

    async def fetch_event(self, access_token: str, event_ref: EventRef) -> NormalizedPayload:
        file_id = event_ref.reference.get("file_id") or event_ref.source_id.split(":", 1)[0]
        item = await self._get_json(
            f"{DRIVE_BASE_URL}/files/{file_id}",
            access_token,
            params={"fields": DRIVE_FILE_FIELDS},
        )
        return self.normalize(EventRef(source_id=self._source_id(item), payload=item))

    @staticmethod
    def _source_id(item: Dict[str, Any]) -> str:
        # One notification per modification, not per file
        return f"{item['id']}:{item.get('modifiedTime', '')}"

    def normalize(self, event_ref: EventRef) -> NormalizedPayload:
        item = event_ref.payload or {}
        name = item.get("name") or "Untitled"
        modifier = (item.get("lastModifyingUser") or {}).get("displayName")
        modified_time = item.get("modifiedTime")
        body = f"{name} was modified"
        if modifier:
            body += f" by {modifier}"
        if modified_time:
            body += f" at {modified_time}"
        return NormalizedPayload(
            source_id=event_ref.source_id,
            title=truncate(f"File updated: {name}", 255),
            body=truncate(body),
            metadata={
                "file_id": item.get("id"),
                "file_name": name,
                "mime_type": item.get("mimeType"),
                "modified_time": modified_time,
                "web_view_link": item.get("webViewLink"),
                "owners": item.get("owners") or [],
                "modified_by": modifier,
            },
            occurred_at=parse_iso(modified_time),
        )

    @property
    def needs_change_subscription(self) -> bool:
        return True

    async def subscribe(self, access_token: str, integration: Integration) -> Optional[Dict[str, Any]]:
        start = await self._get_json(f"{DRIVE_BASE_URL}/changes/startPageToken", access_token)
        page_token = start.get("startPageToken")
        now_ms = int(time.time() * 1000)
        channel_id = f"drive-{integration.user_id}-{now_ms}"
        data = await self._post_json(
            f"{DRIVE_BASE_URL}/changes/watch",
            access_token,
            params={"pageToken": page_token},
            json={
                "id": channel_id,
                "type": "web_hook",
                "address": f"{self.settings.public_base_url.rstrip('/')}/api/webhooks/google-drive",
                "expiration": now_ms + DRIVE_WATCH_TTL_MS,
            },
        )
        return {
            "channel_id": data.get("id", channel_id),
            "resource_id": data.get("resourceId"),
            "channel_expiration": data.get("expiration"),
            "page_token": page_token,
        }
