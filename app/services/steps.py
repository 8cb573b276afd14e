"""Step executors — one per provisioning stage.

Each executor turns (validated request, outputs of earlier stages) into an
output dict that is persisted on the step record, and knows how to undo its
own side effect from that output. Executors are safe to call twice for the
same run: they look for a resource created by the run before creating one,
which is what makes resuming after a crash safe.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta

from app.core.config import Settings
from app.models.namespace import NamespaceKind
from app.models.product_field import DEFAULT_SYSTEM_FIELDS
from app.models.provisioning import Stage
from app.models.request import ProvisioningRequest
from app.models.tenant import TenantStatus
from app.services.errors import ConflictError, UnrecoverableInfraError
from app.services.namespace import NamespaceReservationService, ReservationResult
from app.services.tenant_repository import TenantRepository
from app.services.validation import validate_request

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    run_id: uuid.UUID
    request: ProvisioningRequest
    outputs: dict[Stage, dict] = field(default_factory=dict)

    @property
    def validated(self) -> dict:
        try:
            return self.outputs[Stage.VALIDATING]
        except KeyError:
            raise UnrecoverableInfraError(
                f"Run {self.run_id} has no validated request"
            ) from None

    def tenant_id(self) -> uuid.UUID | None:
        tenant_output = self.outputs.get(Stage.CREATING_TENANT)
        if not tenant_output:
            return None
        return uuid.UUID(tenant_output["tenant_id"])


def marketplace_urls(subdomain: str, custom_domain: str | None, settings: Settings) -> dict:
    host = custom_domain or f"{subdomain}.{settings.platform_base_domain}"
    marketplace_url = f"{settings.url_scheme}://{host}"
    return {
        "marketplace_url": marketplace_url,
        "admin_login_url": f"{marketplace_url}{settings.admin_login_path}",
    }


class StepExecutor(ABC):
    stage: Stage
    # False when undo() has nothing to reverse
    compensable: bool = True

    @abstractmethod
    async def do(self, ctx: StepContext) -> dict:
        """Perform the stage. Raises a ProvisioningError on failure."""

    async def undo(self, ctx: StepContext, output: dict) -> None:
        """Reverse ``do``. ``output`` is empty when ``do`` never reported back."""


class ValidateStep(StepExecutor):
    stage = Stage.VALIDATING
    compensable = False

    async def do(self, ctx: StepContext) -> dict:
        return validate_request(ctx.request)


class ReserveNamespaceStep(StepExecutor):
    stage = Stage.RESERVING_NAMESPACE

    def __init__(self, reservations: NamespaceReservationService, ttl: timedelta) -> None:
        self.reservations = reservations
        self.ttl = ttl

    @staticmethod
    def _namespaces(ctx: StepContext) -> list[tuple[str, NamespaceKind]]:
        validated = ctx.validated
        names = [(validated["subdomain"], NamespaceKind.SUBDOMAIN)]
        if validated.get("custom_domain"):
            names.append((validated["custom_domain"], NamespaceKind.CUSTOM_DOMAIN))
        return names

    async def do(self, ctx: StepContext) -> dict:
        held: list[str] = []
        for name, kind in self._namespaces(ctx):
            result = await self.reservations.reserve(name, ctx.run_id, self.ttl, kind)
            if result == ReservationResult.CONFLICT:
                for previous in held:
                    await self.reservations.release(previous, ctx.run_id)
                raise ConflictError(f"Namespace '{name}' is already taken")
            held.append(name)
        return {"namespaces": held}

    async def undo(self, ctx: StepContext, output: dict) -> None:
        names = output.get("namespaces") or [name for name, _ in self._namespaces(ctx)]
        for name in names:
            await self.reservations.release(name, ctx.run_id)


class CreateTenantStep(StepExecutor):
    stage = Stage.CREATING_TENANT

    def __init__(self, repository: TenantRepository) -> None:
        self.repository = repository

    async def do(self, ctx: StepContext) -> dict:
        tenant = await self.repository.get_tenant_by_run(ctx.run_id)
        if tenant is None:
            validated = ctx.validated
            tenant = await self.repository.create_tenant(
                ctx.run_id,
                name=validated["company_name"],
                subdomain=validated["subdomain"],
                custom_domain=validated["custom_domain"],
                plan_id=validated["plan_id"],
                billing_cycle=validated["billing_cycle"],
            )
        else:
            logger.info("Run %s: tenant %s already exists", ctx.run_id, tenant.id)
        return {"tenant_id": str(tenant.id)}

    async def undo(self, ctx: StepContext, output: dict) -> None:
        if output.get("tenant_id"):
            tenant_id = uuid.UUID(output["tenant_id"])
        else:
            tenant = await self.repository.get_tenant_by_run(ctx.run_id)
            if tenant is None:
                return
            tenant_id = tenant.id
        await self.repository.delete_tenant(tenant_id)


class ProvisionSchemaStep(StepExecutor):
    stage = Stage.PROVISIONING_SCHEMA

    def __init__(self, repository: TenantRepository) -> None:
        self.repository = repository

    async def do(self, ctx: StepContext) -> dict:
        tenant_id = ctx.tenant_id()
        if tenant_id is None:
            raise UnrecoverableInfraError(f"Run {ctx.run_id} has no tenant to seed")
        rows = await self.repository.seed_fields(tenant_id, DEFAULT_SYSTEM_FIELDS)
        return {"field_names": [row.field_name for row in rows]}

    async def undo(self, ctx: StepContext, output: dict) -> None:
        tenant_id = ctx.tenant_id()
        if tenant_id is not None:
            await self.repository.delete_fields(tenant_id)


class CreateAdminStep(StepExecutor):
    stage = Stage.CREATING_ADMIN

    def __init__(self, repository: TenantRepository) -> None:
        self.repository = repository

    async def do(self, ctx: StepContext) -> dict:
        admin = await self.repository.get_admin_by_run(ctx.run_id)
        if admin is None:
            tenant_id = ctx.tenant_id()
            if tenant_id is None:
                raise UnrecoverableInfraError(f"Run {ctx.run_id} has no tenant for the admin")
            validated = ctx.validated
            admin = await self.repository.create_admin(
                ctx.run_id,
                tenant_id,
                email=validated["admin_email"],
                first_name=validated["admin_first_name"],
                last_name=validated["admin_last_name"],
            )
        return {"admin_id": str(admin.id), "admin_email": admin.email}

    async def undo(self, ctx: StepContext, output: dict) -> None:
        if output.get("admin_id"):
            admin_id = uuid.UUID(output["admin_id"])
        else:
            admin = await self.repository.get_admin_by_run(ctx.run_id)
            if admin is None:
                return
            admin_id = admin.id
        await self.repository.delete_admin(admin_id)


class ApplySettingsStep(StepExecutor):
    stage = Stage.APPLYING_SETTINGS

    def __init__(self, repository: TenantRepository, default_primary_color: str) -> None:
        self.repository = repository
        self.default_primary_color = default_primary_color

    async def do(self, ctx: StepContext) -> dict:
        tenant_id = ctx.tenant_id()
        if tenant_id is None:
            raise UnrecoverableInfraError(f"Run {ctx.run_id} has no tenant to configure")
        settings = await self.repository.get_settings(tenant_id)
        if settings is None:
            validated = ctx.validated
            settings = await self.repository.create_settings(
                tenant_id,
                company_name=validated["company_name"],
                primary_color=validated["primary_color"] or self.default_primary_color,
                public_access=validated["public_access"],
                show_prices=True,
                show_stock=True,
                show_categories=True,
                contact_email=validated["admin_email"],
            )
        return {"settings_id": str(settings.id), "primary_color": settings.primary_color}

    async def undo(self, ctx: StepContext, output: dict) -> None:
        tenant_id = ctx.tenant_id()
        if tenant_id is not None:
            await self.repository.delete_settings(tenant_id)


class FinalizeStep(StepExecutor):
    """The commit point: confirms the namespace and activates the tenant."""

    stage = Stage.FINALIZING

    def __init__(
        self,
        reservations: NamespaceReservationService,
        repository: TenantRepository,
        settings: Settings,
    ) -> None:
        self.reservations = reservations
        self.repository = repository
        self.settings = settings

    async def do(self, ctx: StepContext) -> dict:
        tenant_id = ctx.tenant_id()
        if tenant_id is None:
            raise UnrecoverableInfraError(f"Run {ctx.run_id} has no tenant to activate")
        namespaces = ctx.outputs.get(Stage.RESERVING_NAMESPACE, {}).get("namespaces", [])
        for name in namespaces:
            await self.reservations.confirm(name, ctx.run_id)
        await self.repository.set_tenant_status(tenant_id, TenantStatus.ACTIVE)

        validated = ctx.validated
        return {
            "tenant_id": str(tenant_id),
            **marketplace_urls(validated["subdomain"], validated["custom_domain"], self.settings),
        }

    async def undo(self, ctx: StepContext, output: dict) -> None:
        tenant_id = ctx.tenant_id()
        if tenant_id is not None:
            await self.repository.set_tenant_status(tenant_id, TenantStatus.INACTIVE)


def build_executors(
    reservations: NamespaceReservationService,
    repository: TenantRepository,
    settings: Settings,
) -> dict[Stage, StepExecutor]:
    executors: list[StepExecutor] = [
        ValidateStep(),
        ReserveNamespaceStep(reservations, timedelta(seconds=settings.namespace_hold_ttl_seconds)),
        CreateTenantStep(repository),
        ProvisionSchemaStep(repository),
        CreateAdminStep(repository),
        ApplySettingsStep(repository, settings.default_primary_color),
        FinalizeStep(reservations, repository, settings),
    ]
    return {executor.stage: executor for executor in executors}
