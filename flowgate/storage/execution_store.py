"""Durable execution records with optimistic concurrency control."""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .models import ExecutionLogModel, ExecutionModel
from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import ConcurrencyConflictError, StorageError
from ..core.logging import get_logger
from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    LogEventType,
    utcnow,
)

logger = get_logger(__name__)

# How often a conditional transition re-reads after losing a version race
TRANSITION_ATTEMPTS = 5


class ExecutionStore:
    """
    Persists ``ExecutionRecord``s.

    Every save carries the version the caller read; a save against a newer
    row raises ``ConcurrencyConflictError`` instead of overwriting it.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _row_values(record: ExecutionRecord) -> Dict[str, Any]:
        data = record.model_dump(mode="json")
        waiting = record.waiting_info
        return {
            "workflow_id": record.workflow_id,
            "status": record.status.value,
            "definition": data["definition"],
            "context": data["context"],
            "steps": data["steps"],
            "current_node": record.current_node,
            "next_nodes": data["next_nodes"],
            "waiting_info": data["waiting_info"],
            "waiting_task_id": waiting.task_id if waiting else None,
            "waiting_node_id": waiting.node_id if waiting else None,
            "waiting_timeout_at": waiting.timeout_at if waiting else None,
            "retry_count": record.retry_count,
            "max_retries": record.max_retries,
            "node_visits": record.node_visits,
            "error": data["error"],
            "final_output": data["final_output"],
            "extra": data["metadata"],
            "updated_at": record.updated_at,
            "completed_at": record.completed_at,
        }

    @staticmethod
    def _to_record(row: ExecutionModel) -> ExecutionRecord:
        return ExecutionRecord.model_validate({
            "execution_id": row.id,
            "workflow_id": row.workflow_id,
            "status": row.status,
            "definition": row.definition,
            "steps": row.steps or [],
            "context": row.context or {},
            "current_node": row.current_node,
            "next_nodes": row.next_nodes or [],
            "waiting_info": row.waiting_info,
            "retry_count": row.retry_count or 0,
            "max_retries": row.max_retries or 0,
            "node_visits": row.node_visits or 0,
            "error": row.error,
            "final_output": row.final_output,
            "metadata": row.extra or {},
            "version": row.version,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
            "completed_at": row.completed_at,
        })

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.1, retryable_exceptions=[StorageError]))
    def create(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Insert a new execution record.

        Raises:
            StorageError: If the insert fails or the id already exists
        """
        session = self._session_factory()
        try:
            row = ExecutionModel(id=record.execution_id, version=record.version,
                                 created_at=record.created_at, **self._row_values(record))
            session.add(row)
            session.commit()
            return record
        except IntegrityError as e:
            session.rollback()
            error = StorageError(f"Execution {record.execution_id} already exists: {e}",
                                 operation="create", table="executions")
            error.recoverable = False
            raise error
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to create execution {record.execution_id}: {e}",
                               operation="create", table="executions")
        finally:
            session.close()

    def get(self, execution_id: str) -> Optional[ExecutionRecord]:
        session = self._session_factory()
        try:
            row = session.get(ExecutionModel, execution_id)
            return self._to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution {execution_id}: {e}",
                               operation="get", table="executions")
        finally:
            session.close()

    def save(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Persist ``record`` if nobody else saved it since it was read.

        On success the record's version is bumped in place.

        Raises:
            ConcurrencyConflictError: If the stored version moved on
            StorageError: If the update fails
        """
        expected_version = record.version
        record.updated_at = utcnow()
        session = self._session_factory()
        try:
            values = self._row_values(record)
            values["version"] = expected_version + 1
            updated = (
                session.query(ExecutionModel)
                .filter(ExecutionModel.id == record.execution_id, ExecutionModel.version == expected_version)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                session.rollback()
                raise ConcurrencyConflictError(
                    f"Execution {record.execution_id} was modified concurrently",
                    execution_id=record.execution_id,
                    expected_version=expected_version
                )
            session.commit()
            record.version = expected_version + 1
            return record
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to save execution {record.execution_id}: {e}",
                               operation="save", table="executions")
        finally:
            session.close()

    def transition_if_status(
        self,
        execution_id: str,
        expected: Iterable[ExecutionStatusEnum],
        new_status: ExecutionStatusEnum,
        mutate: Optional[Callable[[ExecutionRecord], None]] = None,
        guard: Optional[Callable[[ExecutionRecord], bool]] = None
    ) -> Optional[ExecutionRecord]:
        """
        Atomically move an execution to ``new_status`` if its status is in ``expected``.

        ``guard`` may veto the transition after the status check; ``mutate``
        may change other fields of the record in the same update. The
        read-check-write cycle is repeated when another writer wins the
        version race.

        Returns:
            The updated record, or None if the status did not match
        """
        expected_statuses = set(expected)
        for _ in range(TRANSITION_ATTEMPTS):
            record = self.get(execution_id)
            if record is None or record.status not in expected_statuses:
                return None
            if guard is not None and not guard(record):
                return None
            if mutate is not None:
                mutate(record)
            record.status = new_status
            try:
                return self.save(record)
            except ConcurrencyConflictError:
                logger.debug(f"Transition of {execution_id} to {new_status.value} lost a race, re-reading")
        raise ConcurrencyConflictError(
            f"Could not transition execution {execution_id} after {TRANSITION_ATTEMPTS} attempts",
            execution_id=execution_id
        )

    def find_by_task_id(self, task_id: str) -> Optional[ExecutionRecord]:
        session = self._session_factory()
        try:
            row = session.query(ExecutionModel).filter(ExecutionModel.waiting_task_id == task_id).first()
            return self._to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up task {task_id}: {e}",
                               operation="find_by_task_id", table="executions")
        finally:
            session.close()

    def find_expired_waits(self, now: datetime, limit: int = 100) -> List[ExecutionRecord]:
        """Executions waiting on a human review whose window closed before ``now``."""
        session = self._session_factory()
        try:
            rows = (
                session.query(ExecutionModel)
                .filter(
                    ExecutionModel.status == ExecutionStatusEnum.WAITING_HUMAN_REVIEW.value,
                    ExecutionModel.waiting_timeout_at.isnot(None),
                    ExecutionModel.waiting_timeout_at <= now,
                )
                .order_by(ExecutionModel.waiting_timeout_at)
                .limit(limit)
                .all()
            )
            return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query expired reviews: {e}",
                               operation="find_expired_waits", table="executions")
        finally:
            session.close()

    def list_executions(
        self,
        status: Optional[ExecutionStatusEnum] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100
    ) -> List[ExecutionRecord]:
        session = self._session_factory()
        try:
            query = session.query(ExecutionModel)
            if status is not None:
                query = query.filter(ExecutionModel.status == status.value)
            if workflow_id is not None:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            rows = query.order_by(ExecutionModel.created_at.desc()).limit(limit).all()
            return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list executions: {e}",
                               operation="list_executions", table="executions")
        finally:
            session.close()

    def append_log(
        self,
        execution_id: str,
        event_type: LogEventType,
        message: str,
        node_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append an audit entry; failures are logged, never raised."""
        session = self._session_factory()
        try:
            session.add(ExecutionLogModel(
                execution_id=execution_id,
                timestamp=utcnow(),
                node_id=node_id,
                event_type=event_type.value,
                message=message,
                details=details,
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to write {event_type.value} log for {execution_id}: {e}")
        finally:
            session.close()

    def get_logs(self, execution_id: str) -> List[LogEntry]:
        session = self._session_factory()
        try:
            rows = (
                session.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.id)
                .all()
            )
            return [
                LogEntry(
                    timestamp=row.timestamp,
                    execution_id=row.execution_id,
                    node_id=row.node_id,
                    event_type=LogEventType(row.event_type),
                    message=row.message,
                    details=row.details,
                )
                for row in rows
            ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load logs for {execution_id}: {e}",
                               operation="get_logs", table="execution_logs")
        finally:
            session.close()
