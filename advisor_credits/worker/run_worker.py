"""Run ARQ worker. Usage: python -m advisor_credits.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from advisor_credits.core.config import get_settings
from advisor_credits.worker.tasks import get_redis_settings, renewal_sweep, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions: list = []
    cron_jobs = [
        cron(renewal_sweep, hour=get_settings().renewal_sweep_hour, minute=0, second=0, unique=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
