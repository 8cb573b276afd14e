"""ARQ worker entrypoint.

Runs queued provisioning runs plus the housekeeping crons: stalled-run
recovery, namespace hold expiry and idempotency key purging.
"""

import logging

from arq import cron
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.workers.provisioning import (
    expire_reservations,
    provision_marketplace,
    purge_idempotency_keys,
    recover_stalled_runs,
)

logger = logging.getLogger(__name__)


def _redis_settings() -> RedisSettings:
    """ARQ connection settings from REDIS_URL."""
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    redis_settings.conn_retries = 3
    return redis_settings


async def startup(ctx: dict) -> None:
    from app.core.database import init_db
    await init_db()
    logger.info("Provisioning worker ready (%s)", get_settings().platform_base_domain)


async def shutdown(ctx: dict) -> None:
    from app.core.database import engine
    await engine.dispose()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [provision_marketplace]
    cron_jobs = [
        cron(recover_stalled_runs, minute=set(range(0, 60, 5)), run_at_startup=True),
        cron(expire_reservations, minute=set(range(0, 60, 10))),
        cron(purge_idempotency_keys, hour={3}, minute={0}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 20
    job_timeout = 900  # matches the default run lease


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
