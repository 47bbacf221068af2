"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from advisor_credits.core.audit import notify
from advisor_credits.core.config import get_settings
from advisor_credits.core.exceptions import AppError
from advisor_credits.core.logging import bind_job, configure_logging, get_logger
from advisor_credits.db.init import init_db
from advisor_credits.models.failed_job import FailedJob
from advisor_credits.services import renewals

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
            error_code=e.code if isinstance(e, AppError) else None,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def run_sweep() -> dict[str, int]:
    """Renew what is due, then expire whatever lapsed."""
    counts = await renewals.run_renewal_sweep()
    counts["expired"] = await renewals.expire_lapsed_assignments()
    await notify(None, "renewal_sweep_completed", "sweep", None, counts)
    return counts


async def renewal_sweep(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: daily auto-renewal sweep."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    bind_job("renewal_sweep", job_id)
    log.info("job_start", job="renewal_sweep")
    counts = await _run_with_dlq("renewal_sweep", job_id, [], {}, run_sweep())
    log.info("job_done", job="renewal_sweep", **counts)
    return counts


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug, service="advisor_credits_worker")
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
