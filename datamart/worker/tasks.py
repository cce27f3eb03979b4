"""ARQ job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from datamart.core.config import get_settings
from datamart.core.exceptions import AppError
from datamart.core.logging import configure_logging, get_logger
from datamart.db.init import Database
from datamart.models.failed_job import FailedJob
from datamart.services.container import Services, build_services
from datamart.worker.cron import run_reconcile_pending, run_release_stale_claims

log = get_logger(__name__)


async def _run_with_dlq(job_name: str, ctx: dict[str, Any], coro) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else str(uuid.uuid4())
        try:
            await FailedJob(
                job_name=job_name,
                job_id=job_id,
                attempt=ctx.get("job_try", 1),
                error_type=type(e).__name__,
                error_code=e.code if isinstance(e, AppError) else None,
                reason=str(e)[:2000],
            ).insert()
        except Exception:
            log.exception("dlq_insert_failed", job=job_name, job_id=job_id)
        log.exception("job_failed", job=job_name, job_id=job_id, reason=str(e))
        raise


async def release_stale_deposit_claims(ctx: dict[str, Any]) -> int:
    services: Services = ctx["services"]
    return await _run_with_dlq("release_stale_deposit_claims", ctx, run_release_stale_claims(services))


async def reconcile_pending_deposits(ctx: dict[str, Any]) -> dict[str, Any]:
    services: Services = ctx["services"]
    return await _run_with_dlq("reconcile_pending_deposits", ctx, run_reconcile_pending(services))


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug)
    db = Database()
    await db.open()
    ctx["db"] = db
    ctx["services"] = build_services(db)


async def shutdown(ctx: dict) -> None:
    db = ctx.get("db")
    if db is not None:
        await db.close()


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path and u.path != "/" else 0,
    )
