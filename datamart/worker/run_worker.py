"""Run ARQ worker. Usage: python -m datamart.worker.run_worker (or: arq datamart.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron

from datamart.worker.tasks import (
    get_redis_settings,
    reconcile_pending_deposits,
    release_stale_deposit_claims,
    shutdown,
    startup,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [release_stale_deposit_claims, reconcile_pending_deposits]
    cron_jobs = [
        cron(release_stale_deposit_claims, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
        cron(reconcile_pending_deposits, minute=set(range(2, 60, 10)), second=0),  # every 10 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 4


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
