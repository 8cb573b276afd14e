"""Provisioning error taxonomy.

Every failure that crosses a step boundary is one of these. The orchestrator
only looks at ``retryable`` to decide between retrying and compensating, and
persists ``code`` on the failed step record.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class ProvisioningError(Exception):
    code = "provisioning_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(ProvisioningError):
    """Malformed request. The run ends FAILED at VALIDATING."""

    code = "validation"

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        detail = "; ".join(f"{field}: {reason}" for field, reason in sorted(self.errors.items()))
        super().__init__(f"Invalid provisioning request ({detail})")


class ConflictError(ProvisioningError):
    """A namespace (or idempotency key) already belongs to someone else."""

    code = "conflict"


class IdempotencyKeyReuseError(ConflictError):
    """Same idempotency key submitted with a different request body."""

    code = "idempotency_key_reuse"


class TransientInfraError(ProvisioningError):
    """Timeout or connection failure; safe to retry with backoff."""

    code = "transient_infra"
    retryable = True


class UnrecoverableInfraError(ProvisioningError):
    """Permanent rejection by a collaborator (quota, constraint, bug)."""

    code = "unrecoverable_infra"


class CompensationError(ProvisioningError):
    """An undo kept failing after retries; the run needs an operator."""

    code = "compensation"


class RunNotFoundError(ProvisioningError):
    code = "run_not_found"


class InvalidTransitionError(ProvisioningError):
    """Requested change is not allowed from the run's current stage."""

    code = "invalid_transition"


# Failures whose side effects are unknown; the failing step is undone too.
INFRA_ERROR_CODES = frozenset({TransientInfraError.code, UnrecoverableInfraError.code})


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """Map database driver failures onto the taxonomy.

    Lost connections, lock timeouts and pool exhaustion are transient;
    constraint violations and anything else the database rejects are not.
    """
    try:
        yield
    except ProvisioningError:
        raise
    except (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError) as exc:
        raise TransientInfraError(f"{operation}: {exc}") from exc
    except (ConnectionError, TimeoutError) as exc:
        raise TransientInfraError(f"{operation}: {exc}") from exc
    except SQLAlchemyError as exc:
        raise UnrecoverableInfraError(f"{operation}: {exc}") from exc
