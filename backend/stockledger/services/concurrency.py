# Overview: Service-layer operations for concurrency; row locks, retries and per-product writer locks.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeout
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The in-process product locks below cover SQLite deployments.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts on Product.version_id).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


# ---------------------------------------------------------------------------
# Per-product writer locks
#
# Every read-modify-write of a product (stock-in, sale, re-costing) runs while
# holding the lock for that product's key, so two writers of the same product
# never interleave. Writers of different products do not block each other.
#
# Keys:
# - product_key(product_id) once the product is known
# - variant_key(category_id, name, variant) while resolving/creating a product
# Lock order is always variant key first, then product key.
# ---------------------------------------------------------------------------

# Entries are refcounted by holders and waiters; the last one out evicts the
# key, so the registry only ever holds keys that are in use.
_registry_guard = threading.Lock()
_locks: dict = {}


def product_key(product_id: int) -> tuple:
    return ("product", int(product_id))


def variant_key(category_id: int, product_name: str, variant: str) -> tuple:
    return ("variant", int(category_id), product_name, variant)


def _checkout(key) -> threading.Lock:
    with _registry_guard:
        entry = _locks.get(key)
        if entry is None:
            entry = [threading.Lock(), 0]
            _locks[key] = entry
        entry[1] += 1
        return entry[0]


def _checkin(key) -> None:
    with _registry_guard:
        entry = _locks.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _locks[key]


@contextmanager
def product_lock(key, *, timeout: float = 5.0):
    """
    Hold the writer lock for one product key.

    Raises:
        LockTimeout: the lock was not acquired within `timeout` seconds.
    """
    lock = _checkout(key)
    try:
        if not lock.acquire(timeout=timeout):
            raise LockTimeout(f"timed out after {timeout}s waiting for writer lock {key!r}")
        try:
            yield
        finally:
            lock.release()
    finally:
        _checkin(key)


def is_locked(key) -> bool:
    """Diagnostics only; the answer may be stale by the time it is used."""
    with _registry_guard:
        entry = _locks.get(key)
    return bool(entry and entry[0].locked())


def registered_keys() -> list:
    """Keys currently held or waited on."""
    with _registry_guard:
        return list(_locks)
