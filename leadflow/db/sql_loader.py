import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import aiosql
import asyncpg
from aiosql.adapters.asyncpg import AsyncPGAdapter
from loguru import logger


class LoggingAsyncPGAdapter(AsyncPGAdapter):
    """
    asyncpg adapter that logs the failing query before re-raising.
    Connections may be an asyncpg Connection or Pool.
    """

    def _handle_postgres_error(self, query_name: str, sql: str, e: Exception) -> None:
        """Handle asyncpg database errors consistently."""
        logger.error(f"SQL Error in {query_name}: {e}")
        logger.error(f"Error type: {type(e).__name__}")

        if isinstance(e, asyncpg.PostgresError):
            sqlstate = getattr(e, "sqlstate", None)
            if sqlstate:
                logger.error(f"Postgres SQLSTATE: {sqlstate}")
            detail = getattr(e, "detail", None)
            if detail:
                logger.error(f"Database error detail: {detail}")
            constraint = getattr(e, "constraint_name", None)
            if constraint:
                logger.error(f"Constraint: {constraint}")

        logger.error(f"SQL: {sql}")

    async def select(self, conn, query_name, sql, *args, **kwargs):
        try:
            return await super().select(conn, query_name, sql, *args, **kwargs)
        except (asyncpg.PostgresError, OSError) as e:
            self._handle_postgres_error(query_name, sql, e)
            raise

    async def select_one(self, conn, query_name, sql, *args, **kwargs):
        try:
            return await super().select_one(conn, query_name, sql, *args, **kwargs)
        except (asyncpg.PostgresError, OSError) as e:
            self._handle_postgres_error(query_name, sql, e)
            raise

    async def select_value(self, conn, query_name, sql, *args, **kwargs):
        try:
            return await super().select_value(conn, query_name, sql, *args, **kwargs)
        except (asyncpg.PostgresError, OSError) as e:
            self._handle_postgres_error(query_name, sql, e)
            raise

    async def insert_update_delete(self, conn, query_name, sql, *args, **kwargs):
        try:
            return await super().insert_update_delete(conn, query_name, sql, *args, **kwargs)
        except (asyncpg.PostgresError, OSError) as e:
            self._handle_postgres_error(query_name, sql, e)
            raise

    async def insert_returning(self, conn, query_name, sql, *args, **kwargs):
        try:
            return await super().insert_returning(conn, query_name, sql, *args, **kwargs)
        except (asyncpg.PostgresError, OSError) as e:
            self._handle_postgres_error(query_name, sql, e)
            raise


# Register the adapter
aiosql.register_adapter("asyncpg_logged", LoggingAsyncPGAdapter)  # type: ignore

# Load queries
query_dir = os.path.join(os.path.dirname(__file__), "query")


class DiscoveryQueries(Protocol):
    # discovery.sql
    async def insert_discovery_run(
        self,
        conn: Any,
        *,
        user_id: str,
        query: str,
        city: Optional[str],
        business_category: Optional[str],
        requested_limit: int,
        provider: str,
    ) -> Optional[Dict[str, Any]]: ...

    async def attach_job_to_run(
        self, conn: Any, *, run_id: int, job_id: str
    ) -> Optional[Dict[str, Any]]: ...

    async def get_discovery_run(
        self, conn: Any, *, run_id: int, user_id: Optional[str]
    ) -> Optional[Dict[str, Any]]: ...

    async def mark_run_running(
        self, conn: Any, *, run_id: int
    ) -> Optional[Dict[str, Any]]: ...

    async def mark_run_completed(
        self,
        conn: Any,
        *,
        run_id: int,
        discovered_count: int,
        persisted_count: int,
        quality_meta: Optional[str],
    ) -> Optional[Dict[str, Any]]: ...

    async def mark_run_failed(
        self, conn: Any, *, run_id: int, error_message: str
    ) -> Optional[Dict[str, Any]]: ...

    async def count_runs_since(
        self, conn: Any, *, user_id: str, since: datetime
    ) -> int: ...

    async def get_user_subscription_tier(
        self, conn: Any, *, user_id: str
    ) -> Optional[str]: ...

    async def upsert_run_leads(
        self, conn: Any, *, run_id: int, lead_ids: List[int]
    ) -> None: ...

    async def get_run_leads(
        self, conn: Any, *, run_id: int, limit: int, offset: int
    ) -> List[Dict[str, Any]]: ...

    async def count_run_leads(self, conn: Any, *, run_id: int) -> int: ...

    async def get_unmapped_completed_runs(
        self, conn: Any, *, user_id: str
    ) -> List[Dict[str, Any]]: ...

    async def get_user_stats(
        self, conn: Any, *, user_id: str, since: datetime
    ) -> Optional[Dict[str, Any]]: ...


class QueueQueries(Protocol):
    """
    Protocol for the durable job queue.
    Note: aiosql generates functions that accept **kwargs matching SQL :param names.
    """

    async def insert_job(
        self,
        conn: Any,
        *,
        queue_name: str,
        name: str,
        payload: str,
        max_attempts: int,
        backoff_ms: int,
    ) -> Optional[Dict[str, Any]]: ...

    async def claim_next_job(
        self, conn: Any, *, queue_name: str
    ) -> Optional[Dict[str, Any]]: ...

    async def complete_job(
        self, conn: Any, *, job_id: int, return_value: Optional[str]
    ) -> Optional[Dict[str, Any]]: ...

    async def retry_job(
        self, conn: Any, *, job_id: int, failed_reason: str, delay_ms: int
    ) -> Optional[Dict[str, Any]]: ...

    async def fail_job(
        self, conn: Any, *, job_id: int, failed_reason: str
    ) -> Optional[Dict[str, Any]]: ...

    async def get_job(
        self, conn: Any, *, job_id: int, queue_name: str
    ) -> Optional[Dict[str, Any]]: ...

    async def requeue_stalled_jobs(
        self, conn: Any, *, queue_name: str, stalled_after_ms: int
    ) -> List[Dict[str, Any]]: ...

    async def fail_stalled_jobs(
        self, conn: Any, *, queue_name: str, stalled_after_ms: int
    ) -> List[Dict[str, Any]]: ...

    async def list_jobs(
        self, conn: Any, *, queue_name: str, limit: int
    ) -> List[Dict[str, Any]]: ...


discovery_queries: DiscoveryQueries = aiosql.from_path(  # type: ignore
    os.path.join(query_dir, "discovery.sql"), "asyncpg_logged"
)
queue_queries: QueueQueries = aiosql.from_path(  # type: ignore
    os.path.join(query_dir, "queue.sql"), "asyncpg_logged"
)
