"""
Background sync engine.

Every SYNC_INTERVAL_MS the engine fetches the complete torrent list of each
configured instance and reconciles it into the local cache. Instances are
synced independently: one failing, slow or deleted instance never affects the
others. Instances whose cache changed are announced to live clients with a
"torrents_updated" message.

Ticks are scheduled on the wall clock: a new tick is dispatched every interval
even if an earlier tick has not finished, but an instance whose previous
reconciliation is still running is skipped until it completes.

Remote calls run in a thread pool; cache writes run on the event loop thread.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, List, Optional, Set

from .cache import CacheStore
from .config import Config
from .errors import InstanceGone
from .logger import logger
from .utils import epoch_ms

if TYPE_CHECKING:
    from .models import Instance
    from .notifier import ChangeNotifier


class SyncEngine:
    """
    Periodically reconciles remote torrent lists into the cache.

    Args:
        store: Cache store the lists are reconciled into
        clients: Anything with get(instance) returning a session client
        notifier: Optional change notifier for live clients
        interval_ms: Milliseconds between ticks
        max_workers: Threads available for remote calls
    """

    def __init__(
        self,
        store: CacheStore,
        clients,
        notifier: Optional["ChangeNotifier"] = None,
        interval_ms: int = Config.SYNC_INTERVAL_MS,
        max_workers: int = Config.SYNC_WORKERS,
    ):
        self.store = store
        self.clients = clients
        self.notifier = notifier
        self.interval_ms = interval_ms
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="qb-sync")
        self._in_flight: Set[int] = set()
        self._ticks: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def _fetch_sync(client) -> List[dict]:
        """Fetch the live torrent list (runs in the thread pool)."""
        return list(client.list_torrents())

    async def sync_instance(self, instance: "Instance") -> bool:
        """
        Fetch and reconcile one instance.

        Returns:
            True if the cache of this instance changed. Failures are recorded
            in the instance's sync status and reported as False.
        """
        if instance.id in self._in_flight:
            logger.debug(f"Sync of instance {instance.id} still running, skipping")
            return False

        self._in_flight.add(instance.id)
        try:
            client = self.clients.get(instance)
            loop = asyncio.get_running_loop()
            torrents = await loop.run_in_executor(self._executor, self._fetch_sync, client)
            changed = self.store.reconcile(instance.id, torrents)
        except InstanceGone:
            # Deleted while the fetch was in flight
            logger.debug(f"Instance {instance.id} was deleted during sync")
            return False
        except Exception as e:
            logger.error(f"Failed to sync instance {instance.name} ({instance.id}): {e}")
            self._record_error(instance.id, str(e))
            return False
        finally:
            self._in_flight.discard(instance.id)

        if changed:
            await self.announce(instance.id)
        return changed

    def _record_error(self, instance_id: int, message: str) -> None:
        try:
            self.store.record_sync_error(instance_id, message)
        except Exception as e:
            logger.debug(f"Could not record sync error for instance {instance_id}: {e}")

    async def announce(self, instance_id: int) -> None:
        """Tell live clients that the cache of an instance changed."""
        if self.notifier is None:
            return
        await self.notifier.broadcast_to_instance(instance_id, {
            "type": "torrents_updated",
            "containerId": instance_id,
            "timestamp": epoch_ms(),
        })

    async def tick(self) -> List[int]:
        """
        Run one sync pass over every configured instance.

        Returns:
            Ids of the instances whose cache changed
        """
        if self.notifier is not None and self.notifier.client_count == 0:
            return []

        try:
            instances = self.store.list_instances()
        except Exception as e:
            logger.error(f"Failed to load instances: {e}")
            return []
        if not instances:
            return []

        results = await asyncio.gather(
            *[self.sync_instance(instance) for instance in instances],
            return_exceptions=True,
        )

        changed = []
        for instance, result in zip(instances, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected sync failure for instance {instance.id}: {result}")
            elif result:
                changed.append(instance.id)
        return changed

    async def sync_now(self, instance: "Instance") -> bool:
        """Reconcile one instance immediately, e.g. after a user action."""
        return await self.sync_instance(instance)

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    def schedule_sync(self, instance: "Instance") -> asyncio.Task:
        """Run sync_now in the background, tracked with the dispatched ticks."""
        return self._track(self.sync_now(instance))

    def _dispatch_tick(self) -> None:
        self._track(self.tick())

    async def join(self) -> None:
        """Wait for every dispatched tick and background sync to finish."""
        while self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

    async def run(self) -> None:
        """Dispatch a tick every interval until stopped."""
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000.0
        next_run = loop.time()

        while self._running:
            self._dispatch_tick()
            next_run += interval
            delay = next_run - loop.time()
            if delay < 0:
                # Fell behind; restart the schedule from now
                next_run = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    def start(self) -> None:
        """Start the sync loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self.run())
        logger.info(f"Sync engine started, interval {self.interval_ms}ms")

    async def stop(self) -> None:
        """Stop dispatching ticks. Reconciliations already running finish on their own."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync engine stopped")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
