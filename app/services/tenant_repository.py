"""Tenant repository — the tenant data store as seen by the provisioning steps.

``TenantRepository`` is the seam the steps depend on; ``SqlTenantRepository``
is the production implementation on the platform database. Every method
raises only taxonomy errors: driver failures are classified as transient or
unrecoverable on the way out.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from app.models.admin_account import AdminAccount
from app.models.base import utcnow
from app.models.product_field import ProductFieldDisplay
from app.models.tenant import Tenant, TenantStatus
from app.models.tenant_settings import TenantSettings
from app.services.errors import translate_db_errors

logger = logging.getLogger(__name__)


class TenantRepository(ABC):
    # ── Tenants ──────────────────────────────────────────────

    @abstractmethod
    async def get_tenant_by_run(self, run_id: uuid.UUID) -> Tenant | None: ...

    @abstractmethod
    async def create_tenant(
        self,
        run_id: uuid.UUID,
        *,
        name: str,
        subdomain: str,
        custom_domain: str | None,
        plan_id: str,
        billing_cycle: str,
    ) -> Tenant: ...

    @abstractmethod
    async def set_tenant_status(self, tenant_id: uuid.UUID, status: TenantStatus) -> None: ...

    @abstractmethod
    async def delete_tenant(self, tenant_id: uuid.UUID) -> bool: ...

    # ── Administrator ────────────────────────────────────────

    @abstractmethod
    async def get_admin_by_run(self, run_id: uuid.UUID) -> AdminAccount | None: ...

    @abstractmethod
    async def create_admin(
        self,
        run_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        email: str,
        first_name: str,
        last_name: str,
    ) -> AdminAccount: ...

    @abstractmethod
    async def delete_admin(self, admin_id: uuid.UUID) -> bool: ...

    # ── Product field schema ─────────────────────────────────

    @abstractmethod
    async def list_fields(self, tenant_id: uuid.UUID) -> list[ProductFieldDisplay]: ...

    @abstractmethod
    async def seed_fields(
        self, tenant_id: uuid.UUID, fields: Iterable[dict]
    ) -> list[ProductFieldDisplay]: ...

    @abstractmethod
    async def delete_fields(self, tenant_id: uuid.UUID) -> int: ...

    # ── Settings ─────────────────────────────────────────────

    @abstractmethod
    async def get_settings(self, tenant_id: uuid.UUID) -> TenantSettings | None: ...

    @abstractmethod
    async def create_settings(self, tenant_id: uuid.UUID, **values) -> TenantSettings: ...

    @abstractmethod
    async def delete_settings(self, tenant_id: uuid.UUID) -> bool: ...


class SqlTenantRepository(TenantRepository):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_tenant_by_run(self, run_id: uuid.UUID) -> Tenant | None:
        with translate_db_errors("get tenant"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Tenant).where(Tenant.provisioning_run_id == run_id)
                )
                return result.scalar_one_or_none()

    async def create_tenant(
        self,
        run_id: uuid.UUID,
        *,
        name: str,
        subdomain: str,
        custom_domain: str | None,
        plan_id: str,
        billing_cycle: str,
    ) -> Tenant:
        with translate_db_errors("create tenant"):
            async with self._session_factory() as session:
                tenant = Tenant(
                    name=name,
                    subdomain=subdomain,
                    custom_domain=custom_domain,
                    plan_id=plan_id,
                    billing_cycle=billing_cycle,
                    status=TenantStatus.PROVISIONING,
                    provisioning_run_id=run_id,
                )
                session.add(tenant)
                await session.commit()
                await session.refresh(tenant)
        logger.info("Created tenant %s (%s) for run %s", tenant.id, subdomain, run_id)
        return tenant

    async def set_tenant_status(self, tenant_id: uuid.UUID, status: TenantStatus) -> None:
        with translate_db_errors("update tenant status"):
            async with self._session_factory() as session:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    return
                tenant.status = status
                tenant.updated_at = utcnow()
                if status == TenantStatus.ACTIVE and tenant.activated_at is None:
                    tenant.activated_at = tenant.updated_at
                session.add(tenant)
                await session.commit()

    async def delete_tenant(self, tenant_id: uuid.UUID) -> bool:
        with translate_db_errors("delete tenant"):
            async with self._session_factory() as session:
                result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
                await session.commit()
        return result.rowcount > 0

    async def get_admin_by_run(self, run_id: uuid.UUID) -> AdminAccount | None:
        with translate_db_errors("get admin account"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AdminAccount).where(AdminAccount.provisioning_run_id == run_id)
                )
                return result.scalar_one_or_none()

    async def create_admin(
        self,
        run_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        email: str,
        first_name: str,
        last_name: str,
    ) -> AdminAccount:
        with translate_db_errors("create admin account"):
            async with self._session_factory() as session:
                admin = AdminAccount(
                    tenant_id=tenant_id,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    provisioning_run_id=run_id,
                )
                session.add(admin)
                await session.commit()
                await session.refresh(admin)
        logger.info("Created admin %s for tenant %s", admin.id, tenant_id)
        return admin

    async def delete_admin(self, admin_id: uuid.UUID) -> bool:
        with translate_db_errors("delete admin account"):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(AdminAccount).where(AdminAccount.id == admin_id)
                )
                await session.commit()
        return result.rowcount > 0

    async def list_fields(self, tenant_id: uuid.UUID) -> list[ProductFieldDisplay]:
        with translate_db_errors("list product fields"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProductFieldDisplay)
                    .where(ProductFieldDisplay.tenant_id == tenant_id)
                    .order_by(ProductFieldDisplay.catalog_order)
                )
                return list(result.scalars().all())

    async def seed_fields(
        self, tenant_id: uuid.UUID, fields: Iterable[dict]
    ) -> list[ProductFieldDisplay]:
        """Insert the missing rows among ``fields``; existing names are kept."""
        with translate_db_errors("seed product fields"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProductFieldDisplay.field_name).where(
                        ProductFieldDisplay.tenant_id == tenant_id
                    )
                )
                existing = set(result.scalars().all())
                rows = [
                    ProductFieldDisplay(
                        tenant_id=tenant_id,
                        field_name=spec["field_name"],
                        field_type="system",
                        display_name=spec["display_name"],
                        show_in_catalog=spec["visible"],
                        show_in_product=spec["visible"],
                        catalog_order=spec["order"],
                        product_order=spec["order"],
                    )
                    for spec in fields
                    if spec["field_name"] not in existing
                ]
                session.add_all(rows)
                await session.commit()
        return await self.list_fields(tenant_id)

    async def delete_fields(self, tenant_id: uuid.UUID) -> int:
        with translate_db_errors("delete product fields"):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(ProductFieldDisplay).where(ProductFieldDisplay.tenant_id == tenant_id)
                )
                await session.commit()
        return result.rowcount

    async def get_settings(self, tenant_id: uuid.UUID) -> TenantSettings | None:
        with translate_db_errors("get tenant settings"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
                )
                return result.scalar_one_or_none()

    async def create_settings(self, tenant_id: uuid.UUID, **values) -> TenantSettings:
        with translate_db_errors("create tenant settings"):
            async with self._session_factory() as session:
                settings = TenantSettings(tenant_id=tenant_id, **values)
                session.add(settings)
                await session.commit()
                await session.refresh(settings)
        return settings

    async def delete_settings(self, tenant_id: uuid.UUID) -> bool:
        with translate_db_errors("delete tenant settings"):
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
                )
                await session.commit()
        return result.rowcount > 0
