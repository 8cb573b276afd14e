"""create provisioning, namespace and tenant tables

Revision ID: 4f1a9c2e7b10
Revises:
Create Date: 2026-10-19 09:12:44.120931

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4f1a9c2e7b10'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enum labels are the member names, as SQLModel stores them.
ENUMS: dict[str, tuple[str, ...]] = {
    "tenantstatus": ("PROVISIONING", "ACTIVE", "INACTIVE"),
    "namespacekind": ("SUBDOMAIN", "CUSTOM_DOMAIN"),
    "reservationstate": ("HELD", "CONFIRMED", "RELEASED"),
    "stage": (
        "PENDING", "VALIDATING", "RESERVING_NAMESPACE", "CREATING_TENANT",
        "PROVISIONING_SCHEMA", "CREATING_ADMIN", "APPLYING_SETTINGS", "FINALIZING",
        "COMPLETED", "COMPENSATING", "FAILED",
    ),
    "outcome": ("NONE", "SUCCEEDED", "FAILED", "COMPENSATED"),
    "stepstatus": ("OK", "FAILED"),
    "compensationstatus": ("PENDING", "DONE", "FAILED"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, labels in ENUMS.items():
        postgresql.ENUM(*labels, name=name).create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("custom_domain", sa.String(253), nullable=True, unique=True),
        sa.Column("status", _enum("tenantstatus"), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("billing_cycle", sa.String(16), nullable=False),
        sa.Column("subscription_status", sa.String(32), nullable=False),
        sa.Column("provisioning_run_id", sa.Uuid(), nullable=False),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_tenants_subdomain", "tenants", ["subdomain"], unique=True)
    op.create_index(
        "ix_tenants_provisioning_run_id", "tenants", ["provisioning_run_id"], unique=True
    )

    op.create_table(
        "admin_accounts",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("first_name", sa.String(50), nullable=False),
        sa.Column("last_name", sa.String(50), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("provisioning_run_id", sa.Uuid(), nullable=False),
    )
    op.create_index("ix_admin_accounts_tenant_id", "admin_accounts", ["tenant_id"])
    op.create_index("ix_admin_accounts_email", "admin_accounts", ["email"])
    op.create_index(
        "ix_admin_accounts_provisioning_run_id",
        "admin_accounts",
        ["provisioning_run_id"],
        unique=True,
    )

    op.create_table(
        "tenant_settings",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("company_name", sa.String(100), nullable=False),
        sa.Column("logo_url", sa.String(2048), nullable=True),
        sa.Column("primary_color", sa.String(7), nullable=False),
        sa.Column("show_prices", sa.Boolean(), nullable=False),
        sa.Column("show_stock", sa.Boolean(), nullable=False),
        sa.Column("show_categories", sa.Boolean(), nullable=False),
        sa.Column("public_access", sa.Boolean(), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("contact_phone", sa.String(50), nullable=True),
    )
    op.create_index(
        "ix_tenant_settings_tenant_id", "tenant_settings", ["tenant_id"], unique=True
    )

    op.create_table(
        "product_field_display",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("field_type", sa.String(20), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("show_in_catalog", sa.Boolean(), nullable=False),
        sa.Column("show_in_product", sa.Boolean(), nullable=False),
        sa.Column("catalog_order", sa.Integer(), nullable=False),
        sa.Column("product_order", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("tenant_id", "field_name"),
    )
    op.create_index(
        "ix_product_field_display_tenant_id", "product_field_display", ["tenant_id"]
    )

    op.create_table(
        "namespace_reservations",
        *_timestamps(),
        sa.Column("namespace", sa.String(253), primary_key=True),
        sa.Column("kind", _enum("namespacekind"), nullable=False),
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("state", _enum("reservationstate"), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("released_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_namespace_reservations_run_id", "namespace_reservations", ["run_id"])
    op.create_index("ix_namespace_reservations_state", "namespace_reservations", ["state"])

    op.create_table(
        "provisioning_runs",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("request_payload", sa.Text(), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("stage", _enum("stage"), nullable=False),
        sa.Column("outcome", _enum("outcome"), nullable=False),
        sa.Column("failed_stage", _enum("stage"), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("rollback_requested", sa.Boolean(), nullable=False),
        sa.Column("compensating_since", sa.DateTime(), nullable=True),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_provisioning_runs_idempotency_key", "provisioning_runs", ["idempotency_key"]
    )
    op.create_index("ix_provisioning_runs_subdomain", "provisioning_runs", ["subdomain"])
    op.create_index("ix_provisioning_runs_stage", "provisioning_runs", ["stage"])

    op.create_table(
        "provisioning_steps",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "run_id", sa.Uuid(), sa.ForeignKey("provisioning_runs.id"), nullable=False
        ),
        sa.Column("stage", _enum("stage"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", _enum("stepstatus"), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("output", sa.Text(), nullable=False),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("compensation_status", _enum("compensationstatus"), nullable=True),
        sa.Column("compensation_attempts", sa.Integer(), nullable=False),
        sa.Column("compensation_error", sa.Text(), nullable=True),
        sa.Column("compensated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("run_id", "stage"),
    )
    op.create_index("ix_provisioning_steps_run_id", "provisioning_steps", ["run_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("request_fingerprint", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_idempotency_keys_run_id", "idempotency_keys", ["run_id"])
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])


def downgrade() -> None:
    op.drop_table("idempotency_keys")
    op.drop_table("provisioning_steps")
    op.drop_table("provisioning_runs")
    op.drop_table("namespace_reservations")
    op.drop_table("product_field_display")
    op.drop_table("tenant_settings")
    op.drop_table("admin_accounts")
    op.drop_table("tenants")

    bind = op.get_bind()
    for name in reversed(ENUMS):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
