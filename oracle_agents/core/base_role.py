"""Base class for independently running agent roles."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import Config, config as default_config

logger = logging.getLogger(__name__)

# How long stop() waits for in-flight work before cancelling it
DEFAULT_DRAIN_TIMEOUT = 60.0


class BaseRole:
    """
    Common runtime for provider, buyer and oracle roles.

    Tracks:
    - running state, last activity and error counters for health reporting
    - periodic action timers (one asyncio task each)
    - background work spawned from event handlers, drained on stop()
    """

    role = "agent"

    def __init__(self, name: str, role_config: Optional[Config] = None):
        self.name = name
        self.config = role_config or default_config
        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_activity: Optional[datetime] = None
        self.error_count = 0
        self.last_error: Optional[str] = None
        self._timers: List[asyncio.Task] = []
        self._work: Set[asyncio.Task] = set()
        self._stopping = False
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def log_activity(self, message: str):
        self.last_activity = datetime.now()
        logger.info(f"[{self.name}] {message}")

    def log_error(self, message: str, error: Optional[BaseException] = None):
        self.error_count += 1
        self.last_error = f"{message}: {error}" if error else message
        self.last_activity = datetime.now()
        logger.error(f"[{self.name}] ❌ {self.last_error}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        """Role-specific startup checks. Raise to fail this role's startup."""

    async def start(self):
        if self.running:
            return
        self._stopping = False
        self._stop_event.clear()
        await self.initialize()
        self.running = True
        self.started_at = datetime.now()
        self.log_activity(f"🚀 {self.role} started")

    def add_timer(self, interval: float, action: Callable[[], Awaitable[Any]], name: str):
        """Run ``action`` every ``interval`` seconds while the role is running."""
        self._timers.append(
            asyncio.create_task(self._timer_loop(interval, action, name), name=f"{self.name}:{name}")
        )

    async def _timer_loop(self, interval: float, action: Callable[[], Awaitable[Any]], name: str):
        while self.running:
            try:
                await action()
            except Exception as e:
                self.log_error(f"Timer {name} failed", e)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def spawn(self, coro: Awaitable[Any], name: str) -> Optional[asyncio.Task]:
        """Run handler work in the background so event ticks stay short."""
        if self._stopping:
            logger.info(f"[{self.name}] Not starting {name}: role is stopping")
            coro.close()
            return None
        task = asyncio.create_task(self._guarded(coro, name), name=f"{self.name}:{name}")
        self._work.add(task)
        task.add_done_callback(self._work.discard)
        return task

    async def _guarded(self, coro: Awaitable[Any], name: str):
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log_error(f"{name} failed", e)

    async def sleep_unless_stopped(self, delay: float) -> bool:
        """Sleep for ``delay``. Returns False if the role was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    @property
    def in_flight(self) -> int:
        return len(self._work)

    async def stop(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT):
        """
        Stop timers and wait for in-flight work. Safe to call twice.

        Work still running after ``drain_timeout`` is cancelled.
        """
        if self._stopping:
            return
        self._stopping = True
        self.running = False

        self._stop_event.set()

        # Timers finish their current iteration, handler work runs to completion
        outstanding = set(self._timers) | set(self._work)
        self._timers.clear()

        if outstanding:
            logger.info(f"[{self.name}] Waiting for {len(outstanding)} in-flight task(s)")
            done, pending = await asyncio.wait(outstanding, timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self.log_activity(f"🛑 {self.role} stopped")

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "in_flight": self.in_flight,
        }
