from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional

from notifyhub.errors import TokenExchangeFailed, TokenRefreshFailed, UpstreamFetchFailed, ValidationError
from notifyhub.models.integration import Integration, ProviderType
from notifyhub.providers.base import (
    EventRef,
    NormalizedPayload,
    ProviderAdapter,
    TokenGrant,
    WebhookEnvelope,
    parse_json,
    truncate,
)
from notifyhub.timeutil import from_epoch_millis, parse_iso

# Base HubSpot API URL (v3 CRM + OAuth endpoints)
HUBSPOT_BASE_URL = "https://api.hubapi.com"
HUBSPOT_TOKEN_URL = f"{HUBSPOT_BASE_URL}/oauth/v1/token"

logger = logging.getLogger(__name__)

OBJECT_PROPERTIES = {
    "contacts": ["firstname", "lastname", "email", "company", "hs_lastmodifieddate"],
    "deals": ["dealname", "amount", "dealstage", "hs_lastmodifieddate"],
    "companies": ["name", "domain", "industry", "hs_lastmodifieddate"],
}

# subscriptionType prefix -> CRM object collection
SUBSCRIPTION_OBJECTS = {"contact": "contacts", "deal": "deals", "company": "companies"}

EVENT_TITLES = {
    "contact.creation": "New Contact Created",
    "contact.propertyChange": "Contact Updated",
    "contact.deletion": "Contact Deleted",
    "deal.creation": "New Deal Created",
    "deal.propertyChange": "Deal Updated",
    "deal.deletion": "Deal Deleted",
    "company.creation": "New Company Created",
    "company.propertyChange": "Company Updated",
    "company.deletion": "Company Deleted",
}

EVENT_BODIES = {
    "contact.creation": "A new contact was added to your CRM",
    "contact.propertyChange": "A contact was updated in your CRM",
    "deal.creation": "A new deal was created",
    "deal.propertyChange": "A deal was updated",
    "company.creation": "A new company was added",
    "company.propertyChange": "A company was updated",
}


def _display_name(object_type: str, properties: Dict[str, Any]) -> Optional[str]:
    if object_type == "contacts":
        name = " ".join(p for p in (properties.get("firstname"), properties.get("lastname")) if p)
        return name or properties.get("email")
    if object_type == "deals":
        return properties.get("dealname")
    if object_type == "companies":
        return properties.get("name") or properties.get("domain")
    return None


class HubSpotAdapter(ProviderAdapter):
    provider_type = ProviderType.HUBSPOT

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        body = await self._post_token_form(
            HUBSPOT_TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "client_id": self.settings.hubspot_client_id,
                "client_secret": self.settings.hubspot_client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            TokenExchangeFailed,
        )
        grant = self._token_grant(body, TokenExchangeFailed)
        grant.raw_metadata = {"token_type": body.get("token_type")}
        grant.raw_metadata.update(await self._token_info(grant.access_token))
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        body = await self._post_token_form(
            HUBSPOT_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "client_id": self.settings.hubspot_client_id,
                "client_secret": self.settings.hubspot_client_secret,
                "refresh_token": refresh_token,
            },
            TokenRefreshFailed,
        )
        return self._token_grant(body, TokenRefreshFailed)

    async def _token_info(self, access_token: str) -> Dict[str, Any]:
        """Portal details from the token introspection endpoint (best effort)."""
        try:
            resp = await self._send("GET", f"{HUBSPOT_BASE_URL}/oauth/v1/access-tokens/{access_token}")
        except UpstreamFetchFailed as exc:
            logger.warning("HubSpot token introspection failed: %s", exc.message)
            return {}
        if resp.status_code != 200:
            logger.warning("HubSpot token introspection returned %s", resp.status_code)
            return {}
        info = resp.json()
        return {
            "hub_id": info.get("hub_id"),
            "hub_domain": info.get("hub_domain"),
            "app_id": info.get("app_id"),
            "user": info.get("user"),
            "scopes": info.get("scopes") or [],
        }

    # ------------------------------------------------------------------
    # CRM objects
    # ------------------------------------------------------------------

    async def list_recent_events(self, access_token: str, page_size: int) -> List[EventRef]:
        objects: List[Dict[str, Any]] = []
        for object_type, properties in OBJECT_PROPERTIES.items():
            data = await self._post_json(
                f"{HUBSPOT_BASE_URL}/crm/v3/objects/{object_type}/search",
                access_token,
                json={
                    "sorts": [{"propertyName": "hs_lastmodifieddate", "direction": "DESCENDING"}],
                    "properties": properties,
                    "limit": page_size,
                },
            )
            for obj in data.get("results", []):
                objects.append({**obj, "object_type": object_type})

        objects.sort(key=lambda o: o.get("updatedAt") or "", reverse=True)
        return [
            EventRef(source_id=self._object_source_id(obj["object_type"], obj), payload=obj)
            for obj in objects[:page_size]
        ]

    async def fetch_event(self, access_token: str, event_ref: EventRef) -> NormalizedPayload:
        event = event_ref.reference
        subscription_type = event.get("subscriptionType", "")
        object_type = SUBSCRIPTION_OBJECTS.get(subscription_type.split(".", 1)[0])
        obj: Optional[Dict[str, Any]] = None
        if object_type and not subscription_type.endswith(".deletion"):
            obj = await self._get_json(
                f"{HUBSPOT_BASE_URL}/crm/v3/objects/{object_type}/{event.get('objectId')}",
                access_token,
                params={"properties": ",".join(OBJECT_PROPERTIES[object_type])},
            )
        source_id = event_ref.source_id
        if obj and obj.get("id") and obj.get("updatedAt"):
            # Same key as list_recent_events so sync and webhooks dedup together
            source_id = self._object_source_id(object_type, obj)
        return self._normalize_webhook_event(source_id, event, object_type, obj)

    @staticmethod
    def _object_source_id(object_type: str, obj: Dict[str, Any]) -> str:
        return f"{object_type}:{obj['id']}:{obj.get('updatedAt', '')}"

    def normalize(self, event_ref: EventRef) -> NormalizedPayload:
        if event_ref.payload is None:
            event = event_ref.reference
            object_type = SUBSCRIPTION_OBJECTS.get(event.get("subscriptionType", "").split(".", 1)[0])
            return self._normalize_webhook_event(event_ref.source_id, event, object_type, None)

        obj = event_ref.payload
        object_type = obj.get("object_type", "")
        properties = obj.get("properties") or {}
        singular = object_type[:-1].replace("companie", "company")
        created = obj.get("createdAt") and obj.get("createdAt") == obj.get("updatedAt")
        title = f"New {singular.title()} Created" if created else f"{singular.title()} Updated"
        name = _display_name(object_type, properties) or f"ID: {obj.get('id')}"
        return NormalizedPayload(
            source_id=event_ref.source_id,
            title=title,
            body=truncate(f"{name} ({singular} {obj.get('id')})"),
            metadata={
                "object_type": object_type,
                "object_id": obj.get("id"),
                "properties": properties,
                "updated_at": obj.get("updatedAt"),
            },
            occurred_at=parse_iso(obj.get("updatedAt")),
        )

    def _normalize_webhook_event(
        self,
        source_id: str,
        event: Dict[str, Any],
        object_type: Optional[str],
        obj: Optional[Dict[str, Any]],
    ) -> NormalizedPayload:
        subscription_type = event.get("subscriptionType", "")
        object_id = event.get("objectId")
        title = EVENT_TITLES.get(subscription_type, "HubSpot Update")
        name = _display_name(object_type or "", (obj or {}).get("properties") or {})
        if name:
            body = f"{name} (ID: {object_id})"
        elif subscription_type in EVENT_BODIES:
            body = f"{EVENT_BODIES[subscription_type]} (ID: {object_id})"
        else:
            body = f"{subscription_type} (ID: {object_id})"

        return NormalizedPayload(
            source_id=source_id,
            title=title,
            body=truncate(body),
            metadata={
                "subscription_type": subscription_type,
                "object_id": object_id,
                "portal_id": event.get("portalId"),
                "event_id": event.get("eventId"),
                "occurred_at": event.get("occurredAt"),
                "property_name": event.get("propertyName"),
                "property_value": event.get("propertyValue"),
            },
            occurred_at=from_epoch_millis(event.get("occurredAt")),
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> List[WebhookEnvelope]:
        payload = parse_json(raw_body)
        # HubSpot sends an array of events, possibly for several portals
        if not isinstance(payload, list):
            raise ValidationError("Invalid payload format")

        by_portal: "OrderedDict[str, List[EventRef]]" = OrderedDict()
        for event in payload:
            if not isinstance(event, dict) or event.get("portalId") is None:
                continue
            source_id = str(event.get("eventId") or event.get("objectId"))
            by_portal.setdefault(str(event["portalId"]), []).append(
                EventRef(source_id=source_id, reference=event)
            )
        return [WebhookEnvelope(routing_key=portal, events=refs) for portal, refs in by_portal.items()]

    def matches_integration(self, integration: Integration, routing_key: str) -> bool:
        hub_id = (integration.metadata_ or {}).get("hub_id")
        return hub_id is not None and str(hub_id) == routing_key
