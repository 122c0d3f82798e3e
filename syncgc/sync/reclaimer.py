"""Background reclamation of change-log rows no sync node still needs.

Each pass computes the watermark (lowest ``my_revision`` across all sync
nodes), deletes at most one batch of changes below it, and if the batch was
full arms a timer to run the next pass. Passes run on a private connection
and hold nothing between batches.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .change_store import ChangeStore, SyncNode

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
CONTINUATION_DELAY = 0.5  # seconds between batches


def parse_revision(marker: Any) -> int | float:
    """Convert a stored revision marker to a number.

    Infinite and NaN markers are rejected along with non-numeric ones.

    Raises:
        ValueError: If the marker is not a finite number.
    """
    value: int | float | None = None
    if isinstance(marker, (int, float)) and not isinstance(marker, bool):
        value = marker
    elif isinstance(marker, str):
        text = marker.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                value = None

    if value is None or (isinstance(value, float) and not math.isfinite(value)):
        raise ValueError(f"Invalid revision marker: {marker!r}")
    return value


def compute_watermark(nodes: list[SyncNode]) -> int | float | None:
    """Get the lowest revision still needed by any sync node.

    Sorting in memory is faster here than an ordered index query, and
    markers are compared as numbers, never as text.

    Returns:
        The watermark, or None if there are no sync nodes.
    """
    if not nodes:
        return None

    revisions = sorted(parse_revision(node.my_revision) for node in nodes)
    return revisions[0]


@dataclass
class ReclaimResult:
    """Result of draining the change log."""

    passes: int = 0
    deleted: int = 0
    timestamp: datetime | None = None


class ChangeReclaimer:
    """Deletes obsolete changes in bounded batches.

    ``reclaim()`` is fire-and-forget: it must be called from a running event
    loop, never raises, and keeps re-arming itself while batches come back
    full. ``drain()`` runs the same batches as an explicit loop and lets
    errors propagate.
    """

    def __init__(
        self,
        store: ChangeStore,
        batch_size: int = BATCH_SIZE,
        continuation_delay: float = CONTINUATION_DELAY,
    ):
        """Initialize the reclaimer.

        Args:
            store: Store holding the change and sync-node tables.
            batch_size: Maximum changes deleted per pass.
            continuation_delay: Seconds to wait before the next pass.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if continuation_delay < 0:
            raise ValueError(
                f"continuation_delay must not be negative, got {continuation_delay}"
            )

        self.store = store
        self.batch_size = batch_size
        self.continuation_delay = continuation_delay
        self._tasks: set[asyncio.Task] = set()
        self._armed = 0  # continuations scheduled but not yet fired
        self._passes = 0
        self._failed_passes = 0
        self._total_deleted = 0
        self._last_run: datetime | None = None

    def _delete_batch(self) -> int:
        """Delete one batch of obsolete changes.

        Returns:
            Number of keys selected and deleted.
        """
        with self.store.independent_scope() as scope:
            watermark = compute_watermark(scope.list_sync_nodes())
            if watermark is None:
                return 0

            keys = scope.query_change_keys_below(watermark, self.batch_size)
            if not keys:
                return 0

            deleted = scope.bulk_delete(keys)

        logger.debug(
            f"Reclaimed {deleted} changes below rev {watermark} "
            f"({len(keys)} selected)"
        )
        return len(keys)

    async def run_pass(self) -> int:
        """Run a single reclamation batch.

        Returns:
            Number of changes deleted.
        """
        loop = asyncio.get_running_loop()
        count = await loop.run_in_executor(None, self._delete_batch)

        self._passes += 1
        self._total_deleted += count
        self._last_run = datetime.now()
        return count

    def reclaim(self) -> None:
        """Start a reclamation chain in the background."""
        try:
            task = asyncio.get_running_loop().create_task(self._run_step())
        except Exception as e:
            logger.debug(f"Change reclamation not started: {e}")
            return

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_step(self) -> None:
        """One link of the chain: a pass, then maybe a continuation."""
        try:
            count = await self.run_pass()
            if count == self.batch_size:
                # Batch was full, there is probably more to delete
                asyncio.get_running_loop().call_later(
                    self.continuation_delay, self._continue
                )
                self._armed += 1
        except Exception as e:
            # Not crucial; mostly means the store was closed under us
            self._failed_passes += 1
            logger.debug(f"Change reclamation pass failed: {e}")

    def _continue(self) -> None:
        self._armed -= 1
        if not self.store.is_open():
            logger.debug("Store closed, dropping reclamation continuation")
            return
        self.reclaim()

    async def drain(self) -> ReclaimResult:
        """Run batches until one comes back short.

        Returns:
            ReclaimResult with pass and deletion totals.
        """
        result = ReclaimResult()

        while True:
            count = await self.run_pass()
            result.passes += 1
            result.deleted += count

            if count < self.batch_size:
                break

            await asyncio.sleep(self.continuation_delay)
            if not self.store.is_open():
                logger.debug("Store closed, stopping drain")
                break

        result.timestamp = datetime.now()
        if result.deleted:
            logger.info(
                f"Reclaimed {result.deleted} changes in {result.passes} passes"
            )
        return result

    async def watch(
        self,
        interval_seconds: float = 60,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Drain periodically until stopped.

        Args:
            interval_seconds: Seconds between drains.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting reclamation loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break
            if not self.store.is_open():
                logger.info("Store closed, stopping reclamation loop")
                break

            try:
                await self.drain()
            except Exception as e:
                self._failed_passes += 1
                logger.error(f"Reclamation loop error: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(
                        stop_event.wait(), timeout=interval_seconds
                    )
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(interval_seconds)

        logger.info("Reclamation loop stopped")

    @property
    def pending(self) -> bool:
        """Whether a pass is running or a continuation is armed."""
        return bool(self._tasks) or self._armed > 0

    async def wait_until_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until the chain has no running pass and no armed timer."""
        while self.pending:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            else:
                await asyncio.sleep(poll_interval)

    def get_status(self) -> dict[str, Any]:
        """Get reclamation statistics."""
        return {
            "batch_size": self.batch_size,
            "continuation_delay": self.continuation_delay,
            "passes": self._passes,
            "failed_passes": self._failed_passes,
            "total_deleted": self._total_deleted,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "pending": self.pending,
        }


def reclaim_old_changes(store: ChangeStore) -> ChangeReclaimer:
    """Start reclaiming obsolete changes in the background.

    Must be called from a running event loop. Never raises.

    Returns:
        The reclaimer driving the chain, for status or shutdown.
    """
    reclaimer = ChangeReclaimer(store)
    reclaimer.reclaim()
    return reclaimer
