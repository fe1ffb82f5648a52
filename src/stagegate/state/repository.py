"""Run repositories.

Two implementations of the RunRepository protocol:
- InMemoryRunRepository: dict-backed, for tests and single-process use
- PostgresRunRepository: asyncpg-backed, with connection pooling,
  transactional updates, optimistic locking via the version column and
  history reconstruction from the run_transitions table

Schema: migrations/001_pipeline_runs.sql
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import asyncpg

from stagegate.errors import DatabaseError
from stagegate.state.models import (
    FailureKind,
    PipelineRun,
    RunOutcome,
    Stage,
    TransitionAction,
    TransitionRecord,
    VerdictKind,
)


logger = logging.getLogger(__name__)


class InMemoryRunRepository:
    """Dict-backed RunRepository."""

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}

    async def save(self, run: PipelineRun) -> None:
        if run.run_id in self._runs:
            raise DatabaseError(f"Pipeline run already exists: {run.run_id}")
        self._runs[run.run_id] = run

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        runs = [run for run in self._runs.values() if run.current_stage == stage]
        return sorted(runs, key=lambda r: r.created_at)

    async def update_with_version(self, run: PipelineRun) -> bool:
        existing = self._runs.get(run.run_id)
        if existing is None or existing.version != run.version - 1:
            return False
        self._runs[run.run_id] = run
        return True

    async def health_check(self) -> bool:
        return True


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _dump_counts(counts: Mapping[Stage, int]) -> str:
    return json.dumps({stage.value: count for stage, count in counts.items()})


def _load_counts(raw: Any) -> Dict[Stage, int]:
    if not raw:
        return {}
    data = json.loads(raw) if isinstance(raw, str) else raw
    return {Stage(key): int(value) for key, value in data.items()}


def _rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    return int(status.split()[-1])


class PostgresRunRepository:
    """PostgreSQL implementation of the RunRepository protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresRunRepository("postgresql://...") as repo:
        ...     run = await repo.get("3f2a...")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresRunRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _insert_transitions(
        self,
        conn: asyncpg.Connection,
        run_id: str,
        records: List[TransitionRecord],
    ) -> None:
        for record in records:
            await conn.execute(
                """
                INSERT INTO run_transitions (
                    run_id,
                    sequence,
                    from_stage,
                    to_stage,
                    verdict,
                    action,
                    reason,
                    failure_kind,
                    approval_request_id,
                    occurred_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                run_id,
                record.sequence,
                record.from_stage.value,
                record.to_stage.value,
                record.verdict.value,
                record.action.value,
                record.reason,
                record.failure_kind.value if record.failure_kind else None,
                record.approval_request_id,
                record.timestamp,
            )

    async def save(self, run: PipelineRun) -> None:
        """Insert a new run and its initial history.

        Raises:
            DatabaseError: If the run already exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO pipeline_runs (
                        run_id,
                        spec_ref,
                        current_stage,
                        retry_counts,
                        regeneration_counts,
                        terminal,
                        outcome,
                        error,
                        created_at,
                        updated_at,
                        archived_at,
                        version
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    run.run_id,
                    run.spec_ref,
                    run.current_stage.value,
                    _dump_counts(run.retry_counts),
                    _dump_counts(run.regeneration_counts),
                    run.terminal,
                    run.outcome.value if run.outcome else None,
                    run.error,
                    run.created_at,
                    run.updated_at,
                    run.archived_at,
                    run.version,
                )
                await self._insert_transitions(conn, run.run_id, list(run.history))

            logger.info(
                "Saved pipeline run",
                extra={"run_id": run.run_id, "stage": run.current_stage.value},
            )
        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Pipeline run already exists: {run.run_id}",
                original_error=e,
            ) from e
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save pipeline run",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save pipeline run: {e}", original_error=e) from e

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        """Get a run by ID, reconstructing its history.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        run_id,
                        spec_ref,
                        current_stage,
                        retry_counts,
                        regeneration_counts,
                        terminal,
                        outcome,
                        error,
                        created_at,
                        updated_at,
                        archived_at,
                        version
                    FROM pipeline_runs
                    WHERE run_id = $1
                    """,
                    run_id,
                )
                if row is None:
                    return None

                transition_rows = await conn.fetch(
                    """
                    SELECT
                        sequence,
                        from_stage,
                        to_stage,
                        verdict,
                        action,
                        reason,
                        failure_kind,
                        approval_request_id,
                        occurred_at
                    FROM run_transitions
                    WHERE run_id = $1
                    ORDER BY sequence ASC
                    """,
                    run_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get pipeline run",
                extra={"run_id": run_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get pipeline run: {e}", original_error=e) from e

        return self._row_to_run(row, transition_rows)

    def _row_to_run(self, row: Mapping[str, Any], transition_rows: List[Mapping[str, Any]]) -> PipelineRun:
        history = tuple(
            TransitionRecord(
                sequence=tr["sequence"],
                from_stage=Stage(tr["from_stage"]),
                to_stage=Stage(tr["to_stage"]),
                verdict=VerdictKind(tr["verdict"]),
                action=TransitionAction(tr["action"]),
                reason=tr["reason"],
                failure_kind=FailureKind(tr["failure_kind"]) if tr["failure_kind"] else None,
                approval_request_id=tr["approval_request_id"],
                timestamp=_utc(tr["occurred_at"]),
            )
            for tr in transition_rows
        )

        return PipelineRun(
            run_id=row["run_id"],
            spec_ref=row["spec_ref"],
            current_stage=Stage(row["current_stage"]),
            history=history,
            retry_counts=_load_counts(row["retry_counts"]),
            regeneration_counts=_load_counts(row["regeneration_counts"]),
            terminal=row["terminal"],
            outcome=RunOutcome(row["outcome"]) if row["outcome"] else None,
            error=row["error"],
            created_at=_utc(row["created_at"]),
            updated_at=_utc(row["updated_at"]),
            archived_at=_utc(row["archived_at"]) if row["archived_at"] else None,
            version=row["version"],
        )

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        """List all runs currently in ``stage``, oldest first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT run_id
                    FROM pipeline_runs
                    WHERE current_stage = $1
                    ORDER BY created_at ASC
                    """,
                    stage.value,
                )
        except Exception as e:
            logger.error(
                "Failed to list pipeline runs by stage",
                extra={"stage": stage.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list pipeline runs by stage: {e}",
                original_error=e,
            ) from e

        runs = []
        for row in rows:
            run = await self.get(row["run_id"])
            if run is not None:
                runs.append(run)
        return runs

    async def update_with_version(self, run: PipelineRun) -> bool:
        """Update a run if the stored version is ``run.version - 1``.

        New history entries (sequence beyond the stored maximum) are
        inserted in the same transaction.

        Returns:
            True if the update succeeded, False on a version conflict.

        Raises:
            DatabaseError: If the update fails for another reason.
        """
        expected_version = run.version - 1

        try:
            async with self._transaction() as conn:
                status = await conn.execute(
                    """
                    UPDATE pipeline_runs
                    SET
                        current_stage = $2,
                        retry_counts = $3,
                        regeneration_counts = $4,
                        terminal = $5,
                        outcome = $6,
                        error = $7,
                        updated_at = $8,
                        archived_at = $9,
                        version = $10
                    WHERE run_id = $1 AND version = $11
                    """,
                    run.run_id,
                    run.current_stage.value,
                    _dump_counts(run.retry_counts),
                    _dump_counts(run.regeneration_counts),
                    run.terminal,
                    run.outcome.value if run.outcome else None,
                    run.error,
                    run.updated_at,
                    run.archived_at,
                    run.version,
                    expected_version,
                )

                if _rows_affected(status) == 0:
                    logger.warning(
                        "Version conflict during run update",
                        extra={
                            "run_id": run.run_id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                stored = await conn.fetchval(
                    "SELECT COALESCE(MAX(sequence), 0) FROM run_transitions WHERE run_id = $1",
                    run.run_id,
                )
                new_records = [r for r in run.history if r.sequence > stored]
                await self._insert_transitions(conn, run.run_id, new_records)

            logger.info(
                "Updated pipeline run",
                extra={
                    "run_id": run.run_id,
                    "stage": run.current_stage.value,
                    "version": run.version,
                    "new_transitions": len(new_records),
                },
            )
            return True

        except Exception as e:
            logger.error(
                "Failed to update pipeline run",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to update pipeline run: {e}", original_error=e) from e

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False
