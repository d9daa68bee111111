"""Entity store: CRM record snapshots and writes that emit lifecycle events.

Writes publish an :class:`EntityEvent` to every subscriber after they
succeed. The trigger matcher subscribes here, which is also how workflow
actions that modify records cascade into further workflow runs.
"""

import abc
import copy
import json
import threading
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import EntityEvent, EventType, utc_now
from .database import get_session_factory
from .models import EntityRecordModel

logger = get_logger(__name__)

EntityListener = Callable[[EntityEvent], None]

CUSTOM_FIELD_PREFIX = "custom."
CUSTOM_FIELDS_KEY = "custom"


def as_date(value: Any) -> Optional[date]:
    """Interpret a stored field value as a calendar date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def _read_field(data: Dict[str, Any], field_name: str) -> Any:
    if field_name.startswith(CUSTOM_FIELD_PREFIX):
        return (data.get(CUSTOM_FIELDS_KEY) or {}).get(field_name[len(CUSTOM_FIELD_PREFIX):])
    return data.get(field_name)


def _write_field(data: Dict[str, Any], field_name: str, value: Any) -> None:
    if field_name.startswith(CUSTOM_FIELD_PREFIX):
        custom = dict(data.get(CUSTOM_FIELDS_KEY) or {})
        custom[field_name[len(CUSTOM_FIELD_PREFIX):]] = value
        data[CUSTOM_FIELDS_KEY] = custom
    else:
        data[field_name] = value


class EntityStore(metaclass=abc.ABCMeta):
    """Snapshot loader and writer for CRM records."""

    def __init__(self) -> None:
        self._listeners: List[EntityListener] = []

    def subscribe(self, listener: EntityListener) -> None:
        """Register a callable notified after every successful write."""
        self._listeners.append(listener)

    def _emit(self, event: EntityEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Entity listener failed for {event.entity_type}/{event.entity_id}: {str(e)}")

    # Storage primitives

    @abc.abstractmethod
    def _get(self, entity_type: str, entity_id: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Return (tenant_id, data) or None."""
        raise NotImplementedError

    @abc.abstractmethod
    def _put(self, tenant_id: str, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _remove(self, entity_type: str, entity_id: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def _records(self, tenant_id: str, entity_type: str) -> List[Tuple[str, Dict[str, Any]]]:
        """All (entity_id, data) pairs of a tenant and entity type."""
        raise NotImplementedError

    # Snapshot interface

    def load_entity_data(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Flat snapshot of the record, or None when it does not exist."""
        record = self._get(entity_type, entity_id)
        if record is None:
            return None
        tenant_id, data = record
        snapshot = copy.deepcopy(data)
        snapshot["id"] = entity_id
        snapshot.setdefault("tenant_id", tenant_id)
        return snapshot

    def get_tenant_id(self, entity_type: str, entity_id: str) -> Optional[str]:
        record = self._get(entity_type, entity_id)
        return record[0] if record else None

    def find_entities_by_date(self, tenant_id: str, entity_type: str, field_name: str, target_date: date) -> List[str]:
        """Ids of records whose date field falls on ``target_date``."""
        return [
            entity_id
            for entity_id, data in self._records(tenant_id, entity_type)
            if as_date(_read_field(data, field_name)) == target_date
        ]

    # Writes

    def create_record(
        self,
        tenant_id: str,
        entity_type: str,
        data: Dict[str, Any],
        entity_id: Optional[str] = None,
    ) -> str:
        """Insert a record and publish a Created event."""
        entity_id = entity_id or str(uuid.uuid4())
        self._put(tenant_id, entity_type, entity_id, copy.deepcopy(data))
        self._emit(EntityEvent(
            entity_type=entity_type,
            event_type=EventType.CREATED,
            entity_id=entity_id,
            tenant_id=tenant_id,
        ))
        return entity_id

    def update_fields(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply field changes and publish an Updated event for the ones that differ.

        Args:
            entity_type: Type of the record
            entity_id: Record id
            changes: Field name to new value; ``custom.<name>`` writes a custom field

        Returns:
            The subset of ``changes`` that actually changed a value

        Raises:
            StorageError: If the record does not exist
        """
        record = self._get(entity_type, entity_id)
        if record is None:
            raise StorageError(f"Entity {entity_type}/{entity_id} not found", operation="update_fields")
        tenant_id, data = record
        data = copy.deepcopy(data)

        changed: Dict[str, Any] = {}
        old_values: Dict[str, Any] = {}
        for field_name, value in changes.items():
            current = _read_field(data, field_name)
            if current == value:
                continue
            old_values[field_name] = current
            changed[field_name] = value
            _write_field(data, field_name, value)

        if not changed:
            return changed

        self._put(tenant_id, entity_type, entity_id, data)
        self._emit(EntityEvent(
            entity_type=entity_type,
            event_type=EventType.UPDATED,
            entity_id=entity_id,
            tenant_id=tenant_id,
            changed_properties=changed,
            old_property_values=old_values,
        ))
        return changed

    def delete_record(self, entity_type: str, entity_id: str) -> bool:
        record = self._get(entity_type, entity_id)
        if record is None or not self._remove(entity_type, entity_id):
            return False
        self._emit(EntityEvent(
            entity_type=entity_type,
            event_type=EventType.DELETED,
            entity_id=entity_id,
            tenant_id=record[0],
        ))
        return True


class InMemoryEntityStore(EntityStore):
    """Dictionary-backed entity store for tests and local runs."""

    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[Tuple[str, str], Tuple[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _get(self, entity_type, entity_id):
        with self._lock:
            record = self._data.get((entity_type, entity_id))
            return (record[0], copy.deepcopy(record[1])) if record else None

    def _put(self, tenant_id, entity_type, entity_id, data):
        with self._lock:
            self._data[(entity_type, entity_id)] = (tenant_id, data)

    def _remove(self, entity_type, entity_id):
        with self._lock:
            return self._data.pop((entity_type, entity_id), None) is not None

    def _records(self, tenant_id, entity_type):
        with self._lock:
            return [
                (key[1], copy.deepcopy(data))
                for key, (record_tenant, data) in self._data.items()
                if key[0] == entity_type and record_tenant == tenant_id
            ]


class SqlEntityStore(EntityStore):
    """Entity store persisting records as JSON documents in ``crm_records``."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        super().__init__()
        self._session_factory = session_factory

    def _new_session(self):
        return (self._session_factory or get_session_factory())()

    @staticmethod
    def _to_json(data: Dict[str, Any]) -> Dict[str, Any]:
        # Dates and other scalars are stored in their string form
        return json.loads(json.dumps(data, default=str))

    def _get(self, entity_type, entity_id):
        db = self._new_session()
        try:
            model = (
                db.query(EntityRecordModel)
                .filter(EntityRecordModel.id == entity_id, EntityRecordModel.entity_type == entity_type)
                .first()
            )
            return (model.tenant_id, dict(model.data or {})) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading entity: {str(e)}")
            raise StorageError(f"Failed to load entity: {str(e)}", operation="load", table="crm_records")
        finally:
            db.close()

    def _put(self, tenant_id, entity_type, entity_id, data):
        db = self._new_session()
        try:
            model = db.query(EntityRecordModel).filter(EntityRecordModel.id == entity_id).first()
            if model is None:
                model = EntityRecordModel(id=entity_id, tenant_id=tenant_id, entity_type=entity_type)
                db.add(model)
            model.data = self._to_json(data)
            model.updated_at = utc_now()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while saving entity: {str(e)}")
            raise StorageError(f"Failed to save entity: {str(e)}", operation="save", table="crm_records")
        finally:
            db.close()

    def _remove(self, entity_type, entity_id):
        db = self._new_session()
        try:
            deleted = (
                db.query(EntityRecordModel)
                .filter(EntityRecordModel.id == entity_id, EntityRecordModel.entity_type == entity_type)
                .delete()
            )
            db.commit()
            return deleted > 0
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting entity: {str(e)}")
            raise StorageError(f"Failed to delete entity: {str(e)}", operation="delete", table="crm_records")
        finally:
            db.close()

    def _records(self, tenant_id, entity_type):
        # JSON path queries differ per database, so date matching happens in Python
        db = self._new_session()
        try:
            models = (
                db.query(EntityRecordModel)
                .filter(EntityRecordModel.tenant_id == tenant_id, EntityRecordModel.entity_type == entity_type)
                .all()
            )
            return [(model.id, dict(model.data or {})) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while querying entities: {str(e)}")
            raise StorageError(f"Failed to query entities: {str(e)}", operation="query", table="crm_records")
        finally:
            db.close()
