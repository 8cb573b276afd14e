"""Notification dispatch — signed HTTP callbacks for provisioning outcomes."""

import hashlib
import hmac
import json
import logging
import uuid

import httpx

from app.core.config import Settings
from app.core.security import create_setup_token
from app.models.provisioning import ProvisioningRunRead

logger = logging.getLogger(__name__)

EVENT_PROVISIONED = "marketplace.provisioned"
EVENT_FAILED = "marketplace.failed"


class NotificationDispatcher:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = settings.notification_webhook_url
        self.secret = settings.notification_webhook_secret
        self.settings = settings
        self._transport = transport

    async def provisioned(self, snapshot: ProvisioningRunRead, admin_id: str | None, tenant_id: str | None) -> None:
        """Tell the platform a marketplace is live. Never raises."""
        payload = {
            "run_id": str(snapshot.run_id),
            "subdomain": snapshot.subdomain,
            "marketplace_url": snapshot.marketplace_url,
            "admin_login_url": snapshot.admin_login_url,
            "tenant_id": tenant_id,
        }
        if admin_id and tenant_id and self.settings.jwt_secret_key:
            token = create_setup_token(uuid.UUID(admin_id), uuid.UUID(tenant_id))
            payload["admin_setup_url"] = f"{snapshot.admin_login_url}?setup_token={token}"
        await self.dispatch(EVENT_PROVISIONED, payload)

    async def failed(self, snapshot: ProvisioningRunRead) -> None:
        await self.dispatch(EVENT_FAILED, {
            "run_id": str(snapshot.run_id),
            "subdomain": snapshot.subdomain,
            "outcome": snapshot.outcome,
            "failed_stage": snapshot.failed_stage,
            "error": snapshot.error,
        })

    async def dispatch(self, event_type: str, payload: dict) -> None:
        """POST the event to the configured endpoint. Never raises."""
        if not self.url:
            logger.debug("No notification endpoint configured; dropping %s", event_type)
            return
        body = json.dumps({"event": event_type, "data": payload}, default=str)
        signature = hmac.new(
            self.secret.encode(), body.encode(), hashlib.sha256
        ).hexdigest()
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    content=body,
                    headers={
                        "Content-Type": "application/json",
                        "X-Provisioner-Signature": signature,
                        "X-Provisioner-Event": event_type,
                    },
                )
                response.raise_for_status()
        except Exception:
            logger.warning("Notification delivery failed for %s to %s", event_type, self.url)
