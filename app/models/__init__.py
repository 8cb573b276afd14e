"""Import all models so SQLModel.metadata picks them up."""

from app.models.admin_account import AdminAccount
from app.models.namespace import (
    NamespaceKind,
    NamespaceReservation,
    ReservationState,
)
from app.models.product_field import DEFAULT_SYSTEM_FIELDS, ProductFieldDisplay
from app.models.provisioning import (
    FORWARD_STAGES,
    TERMINAL_STAGES,
    CompensationStatus,
    IdempotencyKey,
    Outcome,
    ProvisioningAccepted,
    ProvisioningRun,
    ProvisioningRunRead,
    Stage,
    StepRecord,
    StepRecordRead,
    StepStatus,
    next_stage,
)
from app.models.request import ProvisioningRequest
from app.models.tenant import Tenant, TenantStatus
from app.models.tenant_settings import TenantSettings

__all__ = [
    "DEFAULT_SYSTEM_FIELDS",
    "FORWARD_STAGES",
    "TERMINAL_STAGES",
    "AdminAccount",
    "CompensationStatus",
    "IdempotencyKey",
    "NamespaceKind",
    "NamespaceReservation",
    "Outcome",
    "ProductFieldDisplay",
    "ProvisioningAccepted",
    "ProvisioningRequest",
    "ProvisioningRun",
    "ProvisioningRunRead",
    "ReservationState",
    "Stage",
    "StepRecord",
    "StepRecordRead",
    "StepStatus",
    "Tenant",
    "TenantSettings",
    "TenantStatus",
    "next_stage",
]
