# Overview: Transaction coordinator core; runs one ledger write as an all-or-nothing unit.

from __future__ import annotations

import threading
from contextlib import ExitStack
from typing import Callable, Iterable, TypeVar

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LedgerError, OperationCancelled, PersistenceFailure
from ..extensions import db
from .concurrency import product_lock, run_with_retry
"""
Ledger write lifecycle (authoritative)

Each external write (stock-in create/edit/delete, sale create/edit/delete)
moves through:

    PENDING -> VALIDATED -> APPLIED -> LOGGED -> COMMITTED
                  \\           \\          \\
                   +-----------+----------+--> FAILED

- VALIDATED: inputs checked, product resolved, writer locks held.
- APPLIED: costing engine ran; product/entry rows mutated in the session.
- LOGGED: movement rows appended in the same session.
- COMMITTED: one commit made all of the above visible together.

Any exception (ledger error, database error, cancellation) rolls the session
back, so a failed operation leaves no partial state behind.
"""

T = TypeVar("T")

STATE_PENDING = "PENDING"
STATE_VALIDATED = "VALIDATED"
STATE_APPLIED = "APPLIED"
STATE_LOGGED = "LOGGED"
STATE_COMMITTED = "COMMITTED"
STATE_FAILED = "FAILED"

_NEXT_STATE = {
    STATE_PENDING: STATE_VALIDATED,
    STATE_VALIDATED: STATE_APPLIED,
    STATE_APPLIED: STATE_LOGGED,
    STATE_LOGGED: STATE_COMMITTED,
}


class LedgerTransaction:
    """State and held writer locks of one ledger write attempt."""

    def __init__(self, name: str, *, lock_timeout: float = 5.0):
        self.name = name
        self.state = STATE_PENDING
        self.history = [STATE_PENDING]
        self.lock_timeout = lock_timeout
        self._locks = ExitStack()
        self._held = set()

    def lock(self, key) -> None:
        """Acquire a product writer lock for the rest of this attempt (idempotent per key)."""
        if key in self._held:
            return
        self._locks.enter_context(product_lock(key, timeout=self.lock_timeout))
        self._held.add(key)

    def holds(self, key) -> bool:
        return key in self._held

    def advance(self, state: str) -> None:
        expected = _NEXT_STATE.get(self.state)
        if state != expected:
            raise RuntimeError(f"{self.name}: illegal transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)

    def validated(self) -> None:
        self.advance(STATE_VALIDATED)

    def applied(self) -> None:
        self.advance(STATE_APPLIED)

    def logged(self) -> None:
        self.advance(STATE_LOGGED)

    def fail(self) -> None:
        if self.state not in (STATE_COMMITTED, STATE_FAILED):
            self.state = STATE_FAILED
            self.history.append(STATE_FAILED)

    def release(self) -> None:
        self._locks.close()
        self._held.clear()


def run_ledger_operation(
    name: str,
    fn: Callable[[LedgerTransaction], T],
    *,
    lock_keys: Iterable = (),
    cancel_event: threading.Event | None = None,
) -> T:
    """
    Run `fn` as one atomic ledger write.

    `fn` receives the LedgerTransaction, must advance it to LOGGED and must
    not commit. Locks in `lock_keys` are taken before `fn` runs; `fn` may take
    more through `tx.lock()`. The whole attempt is retried on lock/deadlock
    and optimistic-version conflicts.

    Raises:
        LedgerError subclasses raised by `fn` (state rolled back)
        OperationCancelled: cancel_event was set before commit
        PersistenceFailure: the database failed or retries were exhausted
    """
    config = current_app.config
    attempts = int(config.get("LEDGER_RETRY_ATTEMPTS", 3))
    lock_timeout = float(config.get("LEDGER_LOCK_TIMEOUT_SECONDS", 5.0))
    lock_keys = list(lock_keys)

    def _attempt():
        tx = LedgerTransaction(name, lock_timeout=lock_timeout)
        try:
            for key in lock_keys:
                tx.lock(key)
            result = fn(tx)
            if tx.state != STATE_LOGGED:
                raise RuntimeError(f"{name}: operation finished in state {tx.state}, expected {STATE_LOGGED}")
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"{name} cancelled before commit")
            db.session.commit()
            tx.advance(STATE_COMMITTED)
            return result
        except BaseException:
            # Includes cancellation via KeyboardInterrupt/GeneratorExit.
            db.session.rollback()
            tx.fail()
            raise
        finally:
            tx.release()

    try:
        result = run_with_retry(_attempt, attempts=attempts)
    except LedgerError as exc:
        current_app.logger.warning("ledger operation %s failed: %s [%s]", name, exc, exc.code)
        raise
    except StaleDataError as exc:
        current_app.logger.warning("ledger operation %s gave up after version conflicts", name)
        raise PersistenceFailure(f"{name}: concurrent modification, retries exhausted") from exc
    except SQLAlchemyError as exc:
        current_app.logger.exception("ledger operation %s failed in the database", name)
        raise PersistenceFailure(f"{name}: database error") from exc

    current_app.logger.info("ledger operation %s committed", name)
    return result
