"""Provisioning request — immutable once a run has accepted it."""

import hashlib
import json

from pydantic import BaseModel, ConfigDict, Field


class ProvisioningRequest(BaseModel):
    """What the checkout flow submits once payment is authorized.

    Only shapes and coarse bounds are checked here; the Validate stage owns
    the business rules so a bad request still leaves an auditable run.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    idempotency_key: str = Field(min_length=1, max_length=255)
    company_name: str = Field(max_length=255)
    admin_first_name: str = Field(max_length=255)
    admin_last_name: str = Field(max_length=255)
    admin_email: str = Field(max_length=320)
    subdomain: str = Field(max_length=255)
    custom_domain: str | None = Field(default=None, max_length=255)
    public_access: bool = True
    primary_color: str | None = Field(default=None, max_length=32)
    plan_id: str = Field(max_length=255)
    billing_cycle: str = Field(default="monthly", max_length=32)

    def fingerprint(self) -> str:
        """Stable hash of the request, used to detect idempotency-key reuse."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(canonical.encode()).hexdigest()
