# Overview: Time-bounded editing leases on persisted orders, shared by all terminals.

"""
Order lock (lease) management.

A lease is one row in order_locks, keyed by order id (UNIQUE). The holder is
the (user_id, session_id) pair, so the same user signed in on two terminals
is still excluded from editing the same order twice.

WHY leases and not plain locks: a terminal that crashes or loses its network
never releases anything. Every lease carries expires_at; readers treat an
expired row as absent and the sweeper deletes it.

Failure semantics:
- acquire: any store failure is a denial (never a false grant)
- renew: failure is logged and reported as False; the next heartbeat retries
- release: failure is logged and swallowed; the lease expires on its own
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..domain import Identity, LockResult, LockStatus
from ..errors import TransientStoreError
from ..events import LOCKS_CHANGED, LOCKS_REFRESHED, bus
from ..extensions import db
from ..models import OrderLock
from ..time_utils import as_utc_naive, utcnow


DEFAULT_LOCK_TTL_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 30


def _ttl() -> timedelta:
    return timedelta(seconds=current_app.config.get("LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS))


def _live_lock(order_id: int, now: datetime) -> OrderLock | None:
    return (
        OrderLock.query
        .filter(OrderLock.order_id == order_id, OrderLock.expires_at > now)
        .first()
    )


def _holder_name_after_race(order_id: int, now: datetime) -> str | None:
    try:
        winner = _live_lock(order_id, now)
    except SQLAlchemyError:
        db.session.rollback()
        return None
    return winner.user_name if winner else None


def acquire_lock(order_id: int, holder: Identity, *, now: datetime | None = None) -> LockResult:
    """
    Acquire (or extend) the editing lease for an order.

    Returns LockResult(granted=True) when the order was free or already
    leased by this same holder; otherwise granted=False with the current
    holder's display name.

    WHY the unique insert: checking "is anyone holding it?" and then inserting
    leaves a window where two terminals both see "free". The unique index on
    order_id closes it: the slower insert fails and is reported as denied.
    """
    now = now or utcnow()
    expires_at = now + _ttl()

    try:
        # Expired rows are garbage; clear them so the insert below can succeed
        (
            OrderLock.query
            .filter(OrderLock.order_id == order_id, OrderLock.expires_at <= now)
            .delete(synchronize_session=False)
        )

        existing = OrderLock.query.filter_by(order_id=order_id).first()
        if existing is not None:
            if holder.same_holder(existing.user_id, existing.session_id):
                extended = max(as_utc_naive(existing.expires_at), expires_at)
                existing.expires_at = extended
                existing.user_name = holder.user_name
                db.session.commit()
                current_app.logger.debug("Lock on order %s extended for %s", order_id, holder.session_id)
                return LockResult(granted=True, held_by=holder.user_name, expires_at=extended)

            held_by = existing.user_name
            held_until = existing.expires_at
            db.session.commit()
            current_app.logger.info("Lock on order %s denied: held by %s", order_id, held_by)
            return LockResult(granted=False, held_by=held_by, expires_at=held_until)

        db.session.add(OrderLock(
            order_id=order_id,
            user_id=holder.user_id,
            user_name=holder.user_name,
            session_id=holder.session_id,
            locked_at=now,
            expires_at=expires_at,
        ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        held_by = _holder_name_after_race(order_id, now)
        current_app.logger.info("Lock on order %s lost race to %s", order_id, held_by or "another session")
        return LockResult(granted=False, held_by=held_by)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Lock acquire failed for order %s", order_id, exc_info=True)
        return LockResult(granted=False)

    current_app.logger.info("Lock on order %s granted to %s", order_id, holder.user_name)
    bus.emit(LOCKS_CHANGED, order_id=order_id, action="acquired", held_by=holder.user_name)
    return LockResult(granted=True, held_by=holder.user_name, expires_at=expires_at)


def renew_lock(order_id: int, holder: Identity, *, now: datetime | None = None) -> bool:
    """
    Push the lease expiry forward. Never shortens an existing lease.

    Returns False when the holder has no live lease on the order or the store
    failed; callers retry on the next heartbeat.
    """
    now = now or utcnow()
    try:
        lock = (
            OrderLock.query
            .filter(
                OrderLock.order_id == order_id,
                OrderLock.user_id == holder.user_id,
                OrderLock.session_id == holder.session_id,
                OrderLock.expires_at > now,
            )
            .first()
        )
        if lock is None:
            return False
        lock.expires_at = max(as_utc_naive(lock.expires_at), now + _ttl())
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Lock renew failed for order %s", order_id, exc_info=True)
        return False


def release_lock(order_id: int, holder: Identity) -> None:
    """Drop the holder's lease on an order. Store failures are logged only."""
    try:
        removed = (
            OrderLock.query
            .filter_by(order_id=order_id, user_id=holder.user_id, session_id=holder.session_id)
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Lock release failed for order %s", order_id, exc_info=True)
        return

    if removed:
        bus.emit(LOCKS_CHANGED, order_id=order_id, action="released", held_by=holder.user_name)


def is_order_locked(order_id: int, holder: Identity, *, now: datetime | None = None) -> LockStatus:
    """
    Is the order leased by someone other than `holder`?

    A lease held by this same (user, session) counts as unlocked: a session
    reopening its own order must not lock itself out.
    """
    now = now or utcnow()
    try:
        lock = _live_lock(order_id, now)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise TransientStoreError(
            f"Could not read lock state for order {order_id}",
            details={"order_id": order_id},
        ) from exc

    if lock is None or holder.same_holder(lock.user_id, lock.session_id):
        return LockStatus(locked=False)
    return LockStatus(locked=True, held_by=lock.user_name)


def list_locks(*, now: datetime | None = None) -> list[OrderLock]:
    """Live leases, newest first."""
    now = now or utcnow()
    return (
        OrderLock.query
        .filter(OrderLock.expires_at > now)
        .order_by(OrderLock.locked_at.desc(), OrderLock.id.desc())
        .all()
    )


def sweep_expired_locks(*, now: datetime | None = None) -> int:
    """Delete every expired lease. Returns the number removed."""
    now = now or utcnow()
    try:
        removed = (
            OrderLock.query
            .filter(OrderLock.expires_at <= now)
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Lock sweep failed", exc_info=True)
        return 0

    if removed:
        bus.emit(LOCKS_CHANGED, order_id=None, action="swept", removed=removed)
    return removed


def release_session_locks(holder: Identity) -> int:
    """Drop every lease held by this (user, session). Used on session end."""
    try:
        removed = (
            OrderLock.query
            .filter_by(user_id=holder.user_id, session_id=holder.session_id)
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Releasing locks for session %s failed", holder.session_id, exc_info=True)
        return 0

    if removed:
        bus.emit(LOCKS_CHANGED, order_id=None, action="session_released", held_by=holder.user_name)
    return removed


class LockSweeper:
    """
    Background thread that deletes expired leases and republishes the
    live lease list every `interval` seconds.
    """

    def __init__(self, app, interval: float | None = None):
        self.app = app
        self.interval = interval or app.config.get("LOCK_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="order-lock-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.run_once()

    def run_once(self) -> int:
        """One sweep pass. Returns the number of leases removed."""
        with self.app.app_context():
            try:
                removed = sweep_expired_locks()
                live = [lock.to_dict() for lock in list_locks()]
            except SQLAlchemyError:
                db.session.rollback()
                self.app.logger.warning("Lock sweeper pass failed", exc_info=True)
                return 0
            finally:
                db.session.remove()

            if removed:
                self.app.logger.debug("Lock sweeper removed %s expired lease(s)", removed)
            bus.emit(LOCKS_REFRESHED, locks=live)
            return removed
