"""
JIRASync control loop - keeps resources converging.

Flow:
1. Recover: list every resource and queue the non-terminal ones
2. Watch: queue a key whenever its resource changes
3. Resync: periodically re-list and queue the non-terminal ones again
4. Work: N workers take keys off the queue and reconcile them; a key is
   never reconciled by two workers at once
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Dict, List, Optional

from ..clock import Clock
from ..cluster import create_cluster_client
from ..config import Settings, get_settings
from ..jobs.orchestrator import JobConfiguration, SyncJobOrchestrator
from ..jobs.scheduler import JobScheduler
from ..jobs.templates import TemplateCatalog
from ..logging_config import configure_logging
from ..resources.store import DELETED, ResourceStore, create_resource_store
from .reconciler import Reconciler, ReconcilerConfig
from .workqueue import ShutDown, WorkQueue

logger = logging.getLogger(__name__)


class ControlLoop:
    """Runs the reconciler over every JIRASync resource in a namespace."""

    def __init__(
        self,
        reconciler: Reconciler,
        store: ResourceStore,
        namespace: Optional[str] = None,
        workers: int = 2,
        resync_interval: float = 300.0,
        error_requeue_seconds: float = 30.0,
    ):
        """Initialize the control loop.

        Args:
            reconciler: Reconciler to drive
            store: Resource store to list and watch
            namespace: Namespace to watch (None for all)
            workers: Number of concurrent reconcile workers
            resync_interval: Seconds between full re-lists
            error_requeue_seconds: Delay before retrying a key whose reconcile raised
        """
        self.reconciler = reconciler
        self.store = store
        self.namespace = namespace
        self.workers = max(1, workers)
        self.resync_interval = resync_interval
        self.error_requeue_seconds = error_requeue_seconds
        self.queue = WorkQueue()
        self.running = False
        self.reconciles = 0
        self.errors = 0
        self._tasks: List[asyncio.Task] = []
        self._stopped: Optional[asyncio.Event] = None

        logger.info(
            f"Control loop initialized: operator={reconciler.operator_id}, "
            f"namespace={namespace or '*'}, workers={self.workers}, "
            f"resync_interval={resync_interval}s"
        )

    async def recover(self) -> int:
        """Queue every non-terminal resource. Returns how many were queued."""
        queued = 0
        for resource in await self.store.list(self.namespace):
            if resource.being_deleted or not resource.is_terminal:
                self.queue.add(resource.key)
                queued += 1
        logger.info(f"Queued {queued} resources for reconciliation")
        return queued

    async def start(self) -> None:
        """Recover outstanding work and start the watch, resync and worker tasks."""
        if self.running:
            return
        self.running = True
        self._stopped = asyncio.Event()
        logger.info(f"Control loop {self.reconciler.operator_id} starting...")

        await self.recover()
        self._tasks.append(asyncio.create_task(self._watch(), name="watch"))
        if self.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._resync(), name="resync"))
        for index in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(index), name=f"worker-{index}"))

    async def stop(self) -> None:
        """Stop taking new keys and wait for in-flight reconciles to finish."""
        if not self.running:
            return
        logger.info(f"Control loop {self.reconciler.operator_id} stopping...")
        self.running = False
        self.queue.shutdown()

        for task in self._tasks:
            if task.get_name() in ("watch", "resync"):
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._stopped is not None:
            self._stopped.set()
        logger.info(f"Control loop {self.reconciler.operator_id} stopped")

    async def run(self) -> None:
        """Start and block until stop() is called."""
        await self.start()
        await self._stopped.wait()

    async def _worker(self, index: int) -> None:
        while True:
            try:
                key = await self.queue.get()
            except ShutDown:
                return
            try:
                await self._process(key)
            finally:
                self.queue.done(key)

    async def _process(self, key: str) -> None:
        self.reconciles += 1
        try:
            result = await self.reconciler.reconcile_key(key)
        except Exception as e:
            self.errors += 1
            logger.exception(f"Error reconciling {key}: {e}")
            self.queue.add_after(key, self.error_requeue_seconds)
            return

        if result.requeue:
            self.queue.add_after(key, result.requeue_after)

    async def _watch(self) -> None:
        while self.running:
            try:
                async for event in self.store.watch(self.namespace):
                    if event.type == DELETED:
                        continue
                    self.queue.add(event.resource.key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Resource watch failed: {e}")
                await asyncio.sleep(self.error_requeue_seconds)

    async def _resync(self) -> None:
        while self.running:
            await asyncio.sleep(self.resync_interval)
            try:
                await self.recover()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Resync failed: {e}")

    def status(self) -> Dict[str, object]:
        return {
            "operator_id": self.reconciler.operator_id,
            "running": self.running,
            "namespace": self.namespace,
            "workers": self.workers,
            "queued": len(self.queue),
            "in_flight": self.queue.in_flight,
            "delayed": self.queue.delayed,
            "reconciles": self.reconciles,
            "errors": self.errors,
        }


def build_control_loop(
    settings: Optional[Settings] = None,
    store: Optional[ResourceStore] = None,
    clock: Optional[Clock] = None,
) -> ControlLoop:
    """Wire store, cluster client, scheduler, orchestrator and reconciler from settings."""
    settings = settings or get_settings()
    cluster = create_cluster_client(settings)
    if store is None:
        store = create_resource_store(settings.resource_store_url, cluster=cluster)

    catalog = TemplateCatalog()
    if settings.template_dir:
        catalog.load_directory(settings.template_dir)

    scheduler = JobScheduler(
        cluster,
        catalog=catalog,
        namespace=settings.job_namespace,
        image=settings.job_image,
        log_level=settings.log_level,
        clock=clock,
    )
    orchestrator = SyncJobOrchestrator(
        scheduler,
        configuration=JobConfiguration(
            namespace=settings.job_namespace,
            image=settings.job_image,
            default_timeout_seconds=settings.default_job_timeout,
            default_concurrency=settings.default_concurrency,
            rate_limit_ms=settings.default_rate_limit_ms,
        ),
        clock=clock,
    )

    config = ReconcilerConfig.from_settings(settings)
    reconciler = Reconciler(store, orchestrator, config=config, clock=clock)

    return ControlLoop(
        reconciler,
        store,
        namespace=settings.resource_namespace or None,
        workers=settings.reconcile_workers,
        resync_interval=settings.resync_interval,
        error_requeue_seconds=settings.error_requeue_seconds,
    )


def run_operator(namespace: Optional[str] = None, workers: Optional[int] = None) -> None:
    """Entry point for running the control loop until SIGINT/SIGTERM."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    if namespace is not None:
        settings = settings.model_copy(update={"resource_namespace": namespace})
    if workers is not None:
        settings = settings.model_copy(update={"reconcile_workers": workers})

    async def main() -> None:
        control_loop = build_control_loop(settings)
        loop = asyncio.get_running_loop()

        def _signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, shutting down...")
            asyncio.ensure_future(control_loop.stop())

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, _signal_handler, signum)

        try:
            await control_loop.run()
        finally:
            await control_loop.store.close()
            await control_loop.reconciler.orchestrator.scheduler.cluster.close()

    asyncio.run(main())
