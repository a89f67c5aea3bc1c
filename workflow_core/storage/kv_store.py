"""Key-value persistence for workflow documents."""

import threading
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from .models import DocumentModel

logger = get_logger(__name__)


class KeyValueStore:
    """Opaque get/put storage for JSON-compatible documents."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put(self, key: str, value: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """Thread-safe dictionary-backed store; values are copied on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return deepcopy(value) if value is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = deepcopy(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


class SqlAlchemyKeyValueStore(KeyValueStore):
    """Store documents as JSON rows in the ``documents`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        session = self._session_factory()
        try:
            row = session.get(DocumentModel, key)
            return deepcopy(row.value) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Database error reading document {key}: {e}")
            raise StorageError(f"Failed to read document: {e}", operation="get", key=key)
        finally:
            session.close()

    def put(self, key: str, value: Dict[str, Any]) -> None:
        session = self._session_factory()
        try:
            row = session.get(DocumentModel, key)
            if row is None:
                session.add(DocumentModel(key=key, value=value))
            else:
                row.value = value
                row.updated_at = datetime.utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error writing document {key}: {e}")
            raise StorageError(f"Failed to write document: {e}", operation="put", key=key)
        finally:
            session.close()

    def delete(self, key: str) -> bool:
        session = self._session_factory()
        try:
            row = session.get(DocumentModel, key)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error deleting document {key}: {e}")
            raise StorageError(f"Failed to delete document: {e}", operation="delete", key=key)
        finally:
            session.close()

    def keys(self, prefix: str = "") -> List[str]:
        session = self._session_factory()
        try:
            query = session.query(DocumentModel.key)
            if prefix:
                query = query.filter(DocumentModel.key.startswith(prefix))
            return sorted(row[0] for row in query.all())
        except SQLAlchemyError as e:
            logger.error(f"Database error listing documents: {e}")
            raise StorageError(f"Failed to list documents: {e}", operation="keys")
        finally:
            session.close()
