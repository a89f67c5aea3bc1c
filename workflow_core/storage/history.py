"""Sinks for execution history records."""

import threading
from collections import deque
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import ExecutionFilters, ExecutionHistory
from .models import ExecutionHistoryModel

logger = get_logger(__name__)


def apply_filters(records: List[ExecutionHistory], filters: Optional[ExecutionFilters]) -> List[ExecutionHistory]:
    """Filter records (already newest first) by status, date range and trigger, then page them."""
    if filters is None:
        return records
    result = records
    if filters.status:
        allowed = set(filters.status)
        result = [r for r in result if r.status in allowed]
    if filters.date_range is not None:
        start, end = filters.date_range.start, filters.date_range.end
        if start is not None:
            result = [r for r in result if r.start_time is not None and r.start_time >= start]
        if end is not None:
            result = [r for r in result if r.start_time is not None and r.start_time <= end]
    if filters.trigger:
        result = [r for r in result if r.trigger.get("type") == filters.trigger]
    result = result[filters.offset:]
    if filters.limit is not None:
        result = result[:filters.limit]
    return result


class HistorySink:
    """Receives finished executions and answers history queries."""

    def record(self, history: ExecutionHistory) -> None:
        raise NotImplementedError

    def query(self, workflow_id: Optional[str] = None,
              filters: Optional[ExecutionFilters] = None) -> List[ExecutionHistory]:
        raise NotImplementedError

    def clear(self, workflow_id: Optional[str] = None) -> int:
        raise NotImplementedError


class InMemoryHistorySink(HistorySink):
    """Bounded in-memory history; the oldest records are dropped first."""

    def __init__(self, max_records: int = 1000):
        self._records: deque = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(self, history: ExecutionHistory) -> None:
        with self._lock:
            self._records.append(history)

    def query(self, workflow_id: Optional[str] = None,
              filters: Optional[ExecutionFilters] = None) -> List[ExecutionHistory]:
        with self._lock:
            records = [r for r in reversed(self._records) if workflow_id is None or r.workflow_id == workflow_id]
        return apply_filters(records, filters)

    def clear(self, workflow_id: Optional[str] = None) -> int:
        with self._lock:
            before = len(self._records)
            kept = [r for r in self._records if workflow_id is not None and r.workflow_id != workflow_id]
            self._records.clear()
            self._records.extend(kept)
            return before - len(kept)


class SqlAlchemyHistorySink(HistorySink):
    """Persist history records to the ``execution_history`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, history: ExecutionHistory) -> None:
        session = self._session_factory()
        try:
            session.add(ExecutionHistoryModel(
                id=history.id,
                workflow_id=history.workflow_id,
                execution_id=history.execution_id,
                status=history.status.value,
                start_time=history.start_time,
                end_time=history.end_time,
                duration_ms=history.duration_ms,
                record=history.to_json_dict(),
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error recording history for {history.execution_id}: {e}")
            raise StorageError(f"Failed to record execution history: {e}", operation="record")
        finally:
            session.close()

    def query(self, workflow_id: Optional[str] = None,
              filters: Optional[ExecutionFilters] = None) -> List[ExecutionHistory]:
        session = self._session_factory()
        try:
            query = session.query(ExecutionHistoryModel)
            if workflow_id is not None:
                query = query.filter(ExecutionHistoryModel.workflow_id == workflow_id)
            if filters is not None and filters.status:
                query = query.filter(ExecutionHistoryModel.status.in_([s.value for s in filters.status]))
            rows = query.order_by(ExecutionHistoryModel.start_time.desc()).all()
            records = [ExecutionHistory.model_validate(row.record) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error querying history: {e}")
            raise StorageError(f"Failed to query execution history: {e}", operation="query")
        finally:
            session.close()
        return apply_filters(records, filters)

    def clear(self, workflow_id: Optional[str] = None) -> int:
        session = self._session_factory()
        try:
            query = session.query(ExecutionHistoryModel)
            if workflow_id is not None:
                query = query.filter(ExecutionHistoryModel.workflow_id == workflow_id)
            deleted = query.delete(synchronize_session=False)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error clearing history: {e}")
            raise StorageError(f"Failed to clear execution history: {e}", operation="clear")
        finally:
            session.close()
