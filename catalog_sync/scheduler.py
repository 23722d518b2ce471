import logging
import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import async_session_maker
from core.exceptions import SyncException
from catalog_sync.client import MedipimClient
from catalog_sync.dispatcher import SyncDispatcher
from catalog_sync.recovery import RecoverySupervisor
from catalog_sync.resolver import RelationshipResolver
from catalog_sync.worker import SyncWorker

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Periodic maintenance: request tasks, drain the queue, resolve, recover."""

    def __init__(self, session_factory=None, client: MedipimClient = None):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_factory or async_session_maker
        self.client = client or MedipimClient()

    async def request_sync_tasks_job(self):
        logger.info("Scheduler: requesting sync tasks")
        async with self.SessionLocal() as session:
            try:
                result = await SyncDispatcher(session).smart_sync_requester()
                logger.info(f"Scheduler: queued {result.queued} task(s)")
            except SyncException as e:
                logger.error(f"Scheduler: requester failed - {e}", extra={"error_context": e.to_dict()})

    async def _drain(self, worker_id: int):
        async with self.SessionLocal() as session:
            worker = SyncWorker(session, client=self.client)
            stats = await worker.process_sync_tasks_batch(settings.WORKER_BATCH_SIZE)
            logger.debug(f"Scheduler: worker {worker_id} finished {stats}")
            return stats

    async def process_queue_job(self):
        """Run WORKER_CONCURRENCY workers, each with its own session."""
        results = await asyncio.gather(
            *(self._drain(i) for i in range(settings.WORKER_CONCURRENCY)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                extra = {"error_context": result.to_dict()} if isinstance(result, SyncException) else None
                logger.error(f"Scheduler: worker failed - {result!r}", extra=extra)

    async def process_deferred_job(self):
        async with self.SessionLocal() as session:
            try:
                resolved = await RelationshipResolver(session).process_until_fixpoint()
                logger.info(f"Scheduler: resolved {resolved} deferred relationship(s)")
            except SyncException as e:
                logger.error(f"Scheduler: deferred processing failed - {e}", extra={"error_context": e.to_dict()})

    async def reset_stuck_syncs_job(self):
        async with self.SessionLocal() as session:
            try:
                reports = await RecoverySupervisor(session).reset_stuck_syncs()
                stuck = [r.entity_type.value for r in reports if r.was_stuck]
                if stuck:
                    logger.warning(f"Scheduler: reset stuck syncs for {', '.join(stuck)}")
            except SyncException as e:
                logger.error(f"Scheduler: stuck sync recovery failed - {e}", extra={"error_context": e.to_dict()})

    async def clear_response_backlog_job(self):
        async with self.SessionLocal() as session:
            try:
                await RecoverySupervisor(session).clear_response_backlog()
            except SyncException as e:
                logger.error(f"Scheduler: backlog cleanup failed - {e}", extra={"error_context": e.to_dict()})

    def start(self):
        """Start the scheduler"""
        jobs = [
            (self.request_sync_tasks_job, "request_sync_tasks", settings.REQUESTER_INTERVAL_SECONDS),
            (self.process_queue_job, "process_queue", settings.WORKER_INTERVAL_SECONDS),
            (self.process_deferred_job, "process_deferred", settings.DEFERRED_INTERVAL_SECONDS),
            (self.reset_stuck_syncs_job, "reset_stuck_syncs", settings.RECOVERY_INTERVAL_SECONDS),
            (self.clear_response_backlog_job, "clear_response_backlog", settings.BACKLOG_INTERVAL_SECONDS),
        ]
        for func, job_id, seconds in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info("Sync Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
