"""
Full-snapshot sync (wipe and replace an account's dataset) and the pull-based change feed.
"""
import logging

from sqlalchemy import exc as sa_exc

from .batch import BatchResult
from .entity_registry import EntityType, DELETION_ORDER, INSERTION_ORDER, STRATEGIES
from .errors import InvalidInput, TransientStoreError

logger = logging.getLogger(__name__)


def download_snapshot(session, user_id):
    """
    Every row the account owns, keyed by store name.

    Parents carry their children inline (sales -> items/returns, purchases -> items,
    returns -> items) in addition to the flat child stores. A store that fails to
    load comes back empty instead of failing the whole download.
    """
    data = {}
    for entity_type in EntityType:
        strategy = STRATEGIES[entity_type]
        try:
            rows = strategy.find_many(session, user_id)
            data[entity_type.store_name] = [strategy.export(row) for row in rows]
        except Exception:
            session.rollback()
            logger.exception("download_snapshot: failed to fetch %s for user %s", entity_type.model_name, user_id)
            data[entity_type.store_name] = []
    return data


def clear_user_data(session, user_id):
    """Delete every row the account owns, children first, as one transaction."""
    deleted = {}
    try:
        for entity_type in DELETION_ORDER:
            deleted[entity_type.store_name] = STRATEGIES[entity_type].delete_all(session, user_id)
        session.commit()
    except sa_exc.SQLAlchemyError as e:
        session.rollback()
        logger.exception("clear_user_data: wipe failed for user %s", user_id)
        raise TransientStoreError('Failed to clear existing data') from e
    logger.info("clear_user_data: user=%s deleted=%s", user_id, deleted)
    return deleted


def upload_snapshot(session, user_id, data):
    """
    Replace the account's dataset with `data` ({storeName: [record, ...]}).

    - The wipe is all-or-nothing; if it fails nothing is inserted.
    - Inserts run parents first and keep the client's createdAt/updatedAt.
    - Rows are owned by `user_id` whatever the payload says.
    - A row that fails to insert is rolled back alone and reported in `failed`.
    """
    if not isinstance(data, dict):
        raise InvalidInput('Invalid data format')

    for store in data:
        if EntityType.from_store_name(store) is None:
            logger.debug("upload_snapshot: skipping unknown store %r", store)

    clear_user_data(session, user_id)

    result = BatchResult()
    for entity_type in INSERTION_ORDER:
        store = entity_type.store_name
        items = data.get(store)
        if not items:
            continue
        if not isinstance(items, list):
            logger.warning("upload_snapshot: %s is not a list, skipped", store)
            continue
        strategy = STRATEGIES[entity_type]
        for item in items:
            try:
                strategy.create(session, user_id, item)
                session.commit()
                result.add_success(store)
            except Exception as e:
                session.rollback()
                logger.exception("upload_snapshot: failed to create %s %r", entity_type.model_name,
                                 item.get('id') if isinstance(item, dict) else item)
                result.add_failure(store, item, e)

    logger.info("upload_snapshot: user=%s inserted=%d failed=%d",
                user_id, result.total_succeeded, len(result.failed))
    return result


def collect_changes(session, user_id, since):
    """Rows modified after `since`, keyed by store name. Stores with no changes are omitted."""
    changes = {}
    for entity_type in EntityType:
        strategy = STRATEGIES[entity_type]
        rows = strategy.find_many(session, user_id, since=since)
        if rows:
            changes[entity_type.store_name] = [strategy.to_wire(row) for row in rows]
    return changes
