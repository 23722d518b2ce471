"""
Queue-driven catalog synchronization engine.

Components (leaf first):
    queue: Durable task queue with pgmq semantics
    state: Sync State Tracker (per-entity-type cursor, compare-and-set)
    requests: Request builder for the provider's query endpoints
    client: HTTP client with retries and a circuit breaker
    processor: Response Processor (ingest, staged responses)
    resolver: Relationship Resolver (join rows, deferred edges, repairs)
    recovery: Recovery Supervisor (stuck syncs, response backlog)
    error_log: Append-only sync_errors writer

Orchestration:
    dispatcher: Queueing policies (steady, aggressive, smart requester)
    worker: Processes one queued task end to end
    dashboard: sync_dashboard rows
    scheduler: APScheduler jobs running the routines above

Usage:
    from core.database import async_session_maker
    from catalog_sync.worker import SyncWorker

    async with async_session_maker() as session:
        await SyncWorker(session).process_sync_tasks_batch()
"""
