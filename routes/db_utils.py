"""
Transaction helpers for stock-affecting operations.

Timeouts come from two places:
- the engine (config._engine_options) makes the server abort a lock wait or a
  statement that runs too long, so a stuck request fails fast;
- transaction() refuses to commit a block that ran past TX_TIMEOUT_SECONDS.
Both surface as TransactionTimeout (503) after a rollback.
"""
from contextlib import contextmanager
import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import exc as sa_exc

from models import db
from .errors import TransientStoreError, TransactionTimeout

logger = logging.getLogger(__name__)

DEFAULT_TX_TIMEOUT_SECONDS = 10.0

# MySQL: lock wait timeout, max_execution_time exceeded
TIMEOUT_ERROR_CODES = frozenset({1205, 3024})


def _tx_timeout():
    if has_app_context():
        return float(current_app.config.get('TX_TIMEOUT_SECONDS', DEFAULT_TX_TIMEOUT_SECONDS))
    return DEFAULT_TX_TIMEOUT_SECONDS


def is_timeout_error(error):
    """True when the driver reports that a lock wait or statement ran out of time."""
    if isinstance(error, sa_exc.TimeoutError):
        return True
    orig = getattr(error, 'orig', None)
    if orig is None:
        return False
    args = getattr(orig, 'args', ())
    if args and args[0] in TIMEOUT_ERROR_CODES:
        return True
    return 'database is locked' in str(orig)


@contextmanager
def transaction(session=None, timeout=None):
    """
    Run the enclosed block as one atomic unit and commit it.

    - Any exception rolls back everything written inside the block.
    - A block that ran longer than `timeout` seconds is rolled back with TransactionTimeout.
    - Pool checkout waits, lock waits and statement limits surface as TransactionTimeout;
      other connection failures as TransientStoreError.
    """
    session = session or db.session
    limit = timeout if timeout is not None else _tx_timeout()
    started = time.monotonic()
    try:
        yield session
        elapsed = time.monotonic() - started
        if elapsed > limit:
            raise TransactionTimeout(f'Transaction exceeded {limit:.0f}s (took {elapsed:.1f}s)')
        session.commit()
    except (sa_exc.TimeoutError, sa_exc.OperationalError, sa_exc.DisconnectionError) as e:
        session.rollback()
        if is_timeout_error(e):
            logger.warning("Transaction timed out: %s", e)
            raise TransactionTimeout('Database is busy, please retry') from e
        logger.exception("Transaction aborted by store error")
        raise TransientStoreError('Database temporarily unavailable, please retry') from e
    except Exception:
        session.rollback()
        raise
