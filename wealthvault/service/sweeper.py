"""Background maintenance for device sessions and security notifications.

Each cycle:
- deactivates sessions past expiry and drops lapsed blacklist rows
- prunes inactive sessions older than the retention window
- hands pending security events to the notifier, when one is configured
- re-probes the blacklist cache so a recovered cache is picked up
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, Optional

from wealthvault.logging import get_logger

if TYPE_CHECKING:
    from wealthvault.service.blacklist import BlacklistCache
    from wealthvault.service.security import Notifier, SecurityMonitor
    from wealthvault.service.sessions import SessionManager

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 900
MAX_BACKOFF_SECONDS = 3600


class SessionSweeper:
    """Periodic task running :meth:`SessionManager.sweep_expired` and friends."""

    def __init__(
        self,
        sessions: "SessionManager",
        monitor: "SecurityMonitor",
        *,
        blacklist: Optional["BlacklistCache"] = None,
        notifier: Optional["Notifier"] = None,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.monitor = monitor
        self.blacklist = blacklist
        self.notifier = notifier
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_sweeper_stopped")

    async def run_once(self) -> Dict[str, int]:
        """One maintenance cycle; store failures propagate to the caller."""
        result = await self.sessions.sweep_expired()
        result["sessions_purged"] = await self.sessions.purge_inactive()
        if self.notifier is not None:
            result["notifications_sent"] = await self.monitor.dispatch_notifications(self.notifier)
        if self.blacklist is not None and self.blacklist.cache is not None:
            await self.blacklist.probe_cache()
        return result

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "session_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
