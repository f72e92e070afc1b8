"""
Polling event ingestion with at-most-once dispatch.

One loop watches one (contract, event) topic. Each tick queries
``[last_processed_block, current_block]`` in bounded chunks, drops logs
already dispatched, decodes the rest and hands them to subscribers in
ascending (block, log index) order.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import Config, config as default_config
from .errors import NetworkError, ParseError
from .models import LogEntry, ProcessedEventKey

logger = logging.getLogger(__name__)

EventHandler = Callable[[LogEntry], Awaitable[None]]

# A failing range is halved at most this many times before the tick gives up
MAX_SPLIT_DEPTH = 6


class EventIngestionLoop:
    """
    Poll a ledger topic and dispatch each log exactly once.

    ``last_processed_block`` only advances after a fully successful tick,
    so a failed query is retried from the same block on the next tick.
    ``seen`` bridges the overlap between a partially processed tick and
    its retry.
    """

    def __init__(
        self,
        gateway,
        contract_name: str,
        event_name: str,
        loop_config: Optional[Config] = None,
        poll_interval: Optional[float] = None,
        lookback_blocks: Optional[int] = None,
        max_block_range: Optional[int] = None,
        seen_window_ticks: Optional[int] = None
    ):
        cfg = loop_config or default_config
        self.gateway = gateway
        self.contract_name = contract_name
        self.event_name = event_name
        self.name = f"{contract_name}.{event_name}"

        self.poll_interval = poll_interval if poll_interval is not None else cfg.poll_interval
        self.lookback_blocks = lookback_blocks if lookback_blocks is not None else cfg.lookback_blocks
        self.max_block_range = max(1, max_block_range or cfg.max_block_range)
        self.seen_window_ticks = max(1, seen_window_ticks or cfg.seen_window_ticks)

        self.handlers: List[EventHandler] = []
        self.last_processed_block: Optional[int] = None
        self._seen: Dict[ProcessedEventKey, int] = {}  # key -> tick it was first seen
        self._tick_count = 0
        self._tick_lock = asyncio.Lock()

        self.running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self.dispatched_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[datetime] = None

    def subscribe(self, handler: EventHandler):
        """Register an async handler called with each decoded LogEntry."""
        self.handlers.append(handler)

    def has_seen(self, key: ProcessedEventKey) -> bool:
        return key in self._seen

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def _record_error(self, message: str):
        self.error_count += 1
        self.last_error = message

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> int:
        """
        Run one poll cycle.

        Returns:
            Number of logs newly dispatched
        """
        async with self._tick_lock:
            self._tick_count += 1
            self.last_tick_at = datetime.now()

            try:
                current_block = await self.gateway.block_number()
            except NetworkError as e:
                logger.warning(f"[{self.name}] ⚠️ Cannot read block number, retrying next tick: {e}")
                self._record_error(str(e))
                return 0

            if self.last_processed_block is None:
                self.last_processed_block = max(0, current_block - self.lookback_blocks)
                logger.info(f"[{self.name}] Cold start from block {self.last_processed_block}")

            from_block = self.last_processed_block
            if current_block < from_block:
                return 0

            dispatched = 0
            chunk_start = from_block
            while chunk_start <= current_block:
                chunk_end = min(chunk_start + self.max_block_range - 1, current_block)
                try:
                    entries = await self._query(chunk_start, chunk_end)
                except NetworkError as e:
                    # Keep last_processed_block so the next tick re-covers this range
                    logger.warning(
                        f"[{self.name}] ⚠️ Query [{chunk_start}, {chunk_end}] failed, "
                        f"retrying from block {from_block} next tick: {e}"
                    )
                    self._record_error(str(e))
                    self._trim_seen()
                    return dispatched

                dispatched += await self._dispatch_batch(entries)
                chunk_start = chunk_end + 1

            self.last_processed_block = current_block + 1
            self._trim_seen()

            if dispatched:
                logger.info(
                    f"[{self.name}] Dispatched {dispatched} log(s) from [{from_block}, {current_block}]"
                )
            return dispatched

    async def _query(self, from_block: int, to_block: int, depth: int = 0) -> List[LogEntry]:
        """Fetch a range, halving it when the provider rejects the width."""
        try:
            return await self.gateway.get_logs(self.contract_name, self.event_name, from_block, to_block)
        except NetworkError:
            if to_block <= from_block or depth >= MAX_SPLIT_DEPTH:
                raise
            middle = (from_block + to_block) // 2
            logger.debug(
                f"[{self.name}] Splitting [{from_block}, {to_block}] at {middle} (depth {depth + 1})"
            )
            left = await self._query(from_block, middle, depth + 1)
            right = await self._query(middle + 1, to_block, depth + 1)
            return left + right

    async def _dispatch_batch(self, entries: List[LogEntry]) -> int:
        dispatched = 0
        for entry in sorted(entries, key=lambda e: (e.block_number, e.log_index)):
            key = entry.key
            if key in self._seen:
                logger.debug(f"[{self.name}] Skipping duplicate {key}")
                continue

            self._seen[key] = self._tick_count

            try:
                self.gateway.decode_log(self.contract_name, self.event_name, entry)
            except ParseError as e:
                logger.warning(f"[{self.name}] ⚠️ Skipping undecodable log: {e}")
                self._record_error(str(e))
                continue

            for handler in self.handlers:
                try:
                    await handler(entry)
                except Exception as e:
                    logger.error(
                        f"[{self.name}] ❌ Handler {getattr(handler, '__qualname__', handler)} failed "
                        f"for block {entry.block_number} log {entry.log_index}: {e}",
                        exc_info=True
                    )
                    self._record_error(str(e))
            dispatched += 1

        self.dispatched_count += dispatched
        return dispatched

    def _trim_seen(self):
        """Forget keys older than the window that can no longer be re-queried."""
        horizon = self._tick_count - self.seen_window_ticks
        floor = self.last_processed_block or 0
        stale = [
            key for key, tick in self._seen.items()
            if tick <= horizon and key.block_number < floor
        ]
        for key in stale:
            del self._seen[key]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run(self):
        """Tick every poll_interval until stop() is called."""
        self.running = True
        logger.info(f"🚀 Event loop {self.name} started (every {self.poll_interval}s)")

        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"[{self.name}] ❌ Tick failed: {e}", exc_info=True)
                self._record_error(str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

        self.running = False
        logger.info(f"🛑 Event loop {self.name} stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self.running = True
            self._task = asyncio.create_task(self.run(), name=f"ingest:{self.name}")
        return self._task

    def stop(self):
        """Stop scheduling ticks. An in-flight tick is allowed to finish."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self.running = False

    async def wait_stopped(self):
        if self._task is not None:
            await self._task

    def get_status(self) -> Dict[str, Any]:
        return {
            "topic": self.name,
            "running": self.running,
            "last_processed_block": self.last_processed_block,
            "seen_count": self.seen_count,
            "dispatched_count": self.dispatched_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }
