"""Cron: deposit claim sweep and pending-deposit reconciliation."""

from typing import Any

from datamart.core.logging import get_logger
from datamart.services.container import Services

log = get_logger(__name__)


async def run_release_stale_claims(services: Services) -> int:
    """Free deposit claims abandoned mid-credit so the reference can be reconciled again."""
    released = await services.deposits.release_stale_claims()
    log.info("release_stale_claims", released=released)
    return released


async def run_reconcile_pending(services: Services) -> dict[str, Any]:
    """Ask Paystack about deposits still pending after the grace period."""
    released = await services.deposits.release_stale_claims()
    summary = await services.deposits.reconcile_pending()
    log.info("reconcile_pending", released=released, **summary)
    return summary
