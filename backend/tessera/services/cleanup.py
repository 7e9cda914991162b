"""Periodic reaping of expired sessions, renewal credentials and ledger entries."""
import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
import logging
import time

from sqlalchemy.orm import Session

from tessera.services import renewal, revocation, sessions
from tessera.timeutil import utcnow

logger = logging.getLogger(__name__)

COMPREHENSIVE_INTERVAL_SECONDS = 24 * 60 * 60


def run_cleanup(
    db: Session,
    now: datetime | None = None,
    retention_days: int | None = None,
) -> dict[str, int]:
    """Sweep everything that has expired, committing once.

    With ``retention_days`` set, deactivated sessions and credentials older
    than that are reaped too.
    """
    now = now or utcnow()
    try:
        # Credentials before sessions so session deletes find nothing left to cascade.
        result = {
            "renewal_credentials": renewal.sweep_expired(db, now=now),
            "sessions": sessions.sweep_expired(db, now=now),
            "revocation_entries": revocation.sweep_expired(db, now=now),
        }
        if retention_days is not None:
            age = timedelta(days=retention_days)
            result["inactive_renewal_credentials"] = renewal.sweep_stale_inactive(db, age, now=now)
            result["inactive_sessions"] = sessions.sweep_stale_inactive(db, age, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return result


class CleanupService:
    """Background task running ``run_cleanup`` on a fixed interval."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: int = 3600,
        retention_days: int = 30,
        initial_delay_seconds: float = 60.0,
    ):
        self._session_factory = session_factory
        self._interval_seconds = interval_seconds
        self._retention_days = retention_days
        self._initial_delay_seconds = initial_delay_seconds
        self._task: asyncio.Task | None = None
        self._running = False
        self._in_progress = False
        self._last_comprehensive: float | None = None
        self.last_result: dict[str, int] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Cleanup service is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Cleanup service started (interval: {self._interval_seconds}s, "
            f"retention: {self._retention_days} days)"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cleanup service stopped")

    async def _cleanup_loop(self) -> None:
        await asyncio.sleep(self._initial_delay_seconds)
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in cleanup run: {e}")
            await asyncio.sleep(self._interval_seconds)

    def _comprehensive_due(self) -> bool:
        if self._last_comprehensive is None:
            return True
        return time.monotonic() - self._last_comprehensive >= COMPREHENSIVE_INTERVAL_SECONDS

    async def run_once(self, comprehensive: bool | None = None) -> dict[str, int] | None:
        """Run one sweep off the event loop. Returns None if one is already running."""
        if self._in_progress:
            logger.warning("Cleanup already running, skipping this iteration")
            return None

        if comprehensive is None:
            comprehensive = self._comprehensive_due()

        self._in_progress = True
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(self._run_sync, comprehensive)
        finally:
            self._in_progress = False

        if comprehensive:
            self._last_comprehensive = time.monotonic()
        self.last_result = result
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Cleanup completed in {duration_ms}ms: {result}")
        return result

    def _run_sync(self, comprehensive: bool) -> dict[str, int]:
        db = self._session_factory()
        try:
            return run_cleanup(db, retention_days=self._retention_days if comprehensive else None)
        finally:
            db.close()
