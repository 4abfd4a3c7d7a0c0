"""
Reconciliation background worker.

Every ``reconciliation_interval_seconds`` it queries the gateway for
payment requests that have been pending too long and settles them.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from mpesa_settlement.config import get_settings
from mpesa_settlement.core.reconciliation import PendingPaymentReconciler
from mpesa_settlement.database.connection import close_db, get_session_factory, init_db
from mpesa_settlement.integrations.credentials import CredentialBroker, build_token_cache
from mpesa_settlement.integrations.daraja_client import DarajaClient
from mpesa_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_once(
    reconciler: PendingPaymentReconciler,
    older_than_seconds: Optional[int] = None,
) -> Dict[str, int]:
    """Run one reconciliation pass in its own database session."""
    session_factory = get_session_factory()
    async with session_factory() as db:
        try:
            summary = await reconciler.reconcile_stale(db, older_than_seconds)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if summary["errors"]:
        logger.warning("reconciliation_errors_detected", **summary)
    return summary


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None,
    older_than_seconds: Optional[int] = None,
    run_once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between runs (default from settings)
        older_than_seconds: Pending age threshold (default from settings)
        run_once: Run a single pass and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=interval,
        older_than_seconds=older_than_seconds or settings.reconciliation_pending_after_seconds,
    )

    client = DarajaClient(settings)
    cache = build_token_cache(settings)
    broker = CredentialBroker(client, cache, settings)
    reconciler = PendingPaymentReconciler(client, broker, settings=settings)

    stop_event = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await init_db()

    try:
        while not stop_event.is_set():
            try:
                await run_reconciliation_once(reconciler, older_than_seconds)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one reconciliation fails

            if run_once:
                break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    finally:
        close_cache = getattr(cache, "close", None)
        if close_cache is not None:
            await close_cache()
        await client.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="M-Pesa pending payment reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation runs"
    )
    parser.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Only query requests pending longer than this many seconds",
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    asyncio.run(
        start_reconciliation_worker(
            interval_seconds=args.interval,
            older_than_seconds=args.older_than,
            run_once=args.once,
        )
    )


if __name__ == "__main__":
    main()
