"""
Incremental sync: merge a client's locally-changed records into the server store.

Per record, looked up by primary key:
- absent            -> create, owned by the caller, updated_at = server now
- newer than the client's lastSyncTimestamp -> conflict, nothing written
- otherwise         -> update, updated_at = server now

A missing or unparseable lastSyncTimestamp disables the conflict check, so every
existing row is overwritten.

Parent references (saleId, productId, ...) must point at the caller's own rows.

Conflicts are returned as data for the client to resolve. A record that fails
(bad field, constraint violation, foreign account) is rolled back on its own and
reported in `failed`; the rest of the batch continues.
"""
from dataclasses import dataclass, field
import logging

from models import utcnow
from .batch import BatchFailure
from .entity_registry import EntityType, INSERTION_ORDER, STRATEGIES
from .errors import InvalidInput, ValidationError
from .utils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ConflictRecord:
    id: str
    type: str
    server_data: dict
    client_data: dict

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'serverData': self.server_data,
            'clientData': self.client_data,
        }


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    conflicts: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def to_dict(self):
        return {
            'created': self.created,
            'updated': self.updated,
            'conflicts': [c.to_dict() for c in self.conflicts],
            'failed': [f.to_dict() for f in self.failed],
        }


def _parse_watermark(value):
    # None means "never synced": existing rows are overwritten without a conflict check.
    if value in (None, ''):
        return None
    try:
        return parse_timestamp(value, field='lastSyncTimestamp')
    except ValidationError:
        logger.warning("reconcile: unparseable lastSyncTimestamp %r, existing rows will be overwritten", value)
        return None


def _reconcile_record(session, strategy, user_id, record, watermark, result):
    store = strategy.entity_type.store_name
    record_id = record.get('id') if isinstance(record, dict) else None
    try:
        existing = strategy.find(session, record_id) if record_id else None
        if existing is not None and existing.user_id != user_id:
            raise ValidationError(f'{store} {record_id} belongs to another account')

        if existing is None:
            strategy.create(session, user_id, record, stamp=utcnow())
            session.commit()
            result.created += 1
            return

        if watermark is not None and existing.updated_at > watermark:
            result.conflicts.append(ConflictRecord(
                id=record_id,
                type=store,
                server_data=strategy.to_wire(existing),
                client_data=record,
            ))
            return

        strategy.update(session, existing, record, stamp=utcnow())
        session.commit()
        result.updated += 1
    except Exception as e:
        session.rollback()
        logger.exception("reconcile: %s record %s failed", store, record_id)
        result.failed.append(BatchFailure(item=record, error=str(e), store=store))


def reconcile(session, user_id, data, last_sync_timestamp):
    """
    Apply `data` ({storeName: [record, ...]}) for `user_id`.

    Entity types are visited parents first (INSERTION_ORDER) so a new sale and
    its new items can arrive in the same batch. Records within a type are
    processed sequentially in payload order.
    """
    if not isinstance(data, dict) or not data:
        raise InvalidInput('Invalid data format')

    for store in data:
        if EntityType.from_store_name(store) is None:
            logger.debug("reconcile: skipping unknown store %r", store)

    watermark = _parse_watermark(last_sync_timestamp)
    result = ReconcileResult()

    for entity_type in INSERTION_ORDER:
        records = data.get(entity_type.store_name)
        if not records:
            continue
        if not isinstance(records, list):
            result.failed.append(BatchFailure(item=records, error='expected a list of records',
                                              store=entity_type.store_name))
            continue
        strategy = STRATEGIES[entity_type]
        for record in records:
            _reconcile_record(session, strategy, user_id, record, watermark, result)

    logger.info("reconcile: user=%s created=%d updated=%d conflicts=%d failed=%d",
                user_id, result.created, result.updated, len(result.conflicts), len(result.failed))
    return result
