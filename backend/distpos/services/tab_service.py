# Overview: Per-terminal set of open order tabs, with lease handling for persisted orders.

"""
Tab Session Manager.

A terminal works on several orders at once, one tab each. Exactly one tab is
active. Tabs holding a persisted order also hold that order's lease, renewed
by heartbeat() for the active tab only.

Tab states:
- unsaved-draft: order has no id yet; no lease involved
- persisted: order has an id; holds_lock tells whether we hold its lease

A session never has zero tabs: closing the last one opens a fresh draft.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Callable

from flask import current_app

from ..domain import (
    ClientInfo,
    Identity,
    Order,
    SettlementAuthorization,
    SettlementResult,
    Tender,
    WarehouseDistribution,
)
from ..errors import EngineError, LockConflict, ValidationError
from . import lock_service, order_builder, order_store, settlement_service


TAB_UNSAVED_DRAFT = "unsaved-draft"
TAB_PERSISTED = "persisted"


@dataclass
class Tab:
    id: str
    order: Order
    is_active: bool = False
    holds_lock: bool = False
    dirty: bool = False
    settling: bool = False

    @property
    def state(self) -> str:
        return TAB_PERSISTED if self.order.is_persisted else TAB_UNSAVED_DRAFT

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state,
            "is_active": self.is_active,
            "holds_lock": self.holds_lock,
            "dirty": self.dirty,
            "settling": self.settling,
            "order": self.order.to_dict(),
        }


def _tab_id() -> str:
    return f"tab-{uuid.uuid4().hex[:8]}"


class TabSession:
    """Open tabs for one (user, session)."""

    def __init__(self, identity: Identity, *, walk_in_name: str | None = None):
        self.identity = identity
        self.walk_in_name = walk_in_name or order_builder.DEFAULT_WALK_IN_NAME
        self._tabs: list[Tab] = []
        self._mutex = threading.RLock()
        self.new_tab()

    # -- queries ---------------------------------------------------------

    @property
    def tabs(self) -> list[Tab]:
        with self._mutex:
            return list(self._tabs)

    @property
    def active_tab(self) -> Tab:
        with self._mutex:
            return next(t for t in self._tabs if t.is_active)

    def get_tab(self, tab_id: str) -> Tab:
        with self._mutex:
            for tab in self._tabs:
                if tab.id == tab_id:
                    return tab
        raise ValidationError(f"Tab {tab_id} not found", details={"tab_id": tab_id})

    def find_order_tab(self, order_id: int) -> Tab | None:
        with self._mutex:
            return next((t for t in self._tabs if t.order.id == order_id), None)

    # -- tab lifecycle ---------------------------------------------------

    def _activate(self, tab: Tab) -> None:
        for other in self._tabs:
            other.is_active = other is tab

    def new_tab(self, client: ClientInfo | None = None) -> Tab:
        with self._mutex:
            order = order_builder.new_order(
                client,
                walk_in_name=self.walk_in_name,
                created_by=self.identity.user_id,
            )
            tab = Tab(id=_tab_id(), order=order)
            self._tabs.append(tab)
            self._activate(tab)
            return tab

    def open_order(self, order_id: int) -> Tab:
        """
        Open a persisted order in a new tab, or focus the tab already showing
        it (taking the lease if that tab does not hold it yet).

        Raises LockConflict naming the holder when another session is editing it.
        """
        with self._mutex:
            existing = self.find_order_tab(order_id)
            if existing is not None:
                if not existing.holds_lock:
                    self._take_lease(order_id)
                    existing.holds_lock = True
                self.switch_tab(existing.id)
                return existing

            self._take_lease(order_id)
            try:
                order = order_store.load_order(order_id)
            except EngineError:
                lock_service.release_lock(order_id, self.identity)
                raise

            tab = Tab(id=_tab_id(), order=order, holds_lock=True)
            self._tabs.append(tab)
            self._activate(tab)
            return tab

    def _take_lease(self, order_id: int) -> None:
        status = lock_service.is_order_locked(order_id, self.identity)
        if status.locked:
            raise LockConflict(order_id, status.held_by)

        result = lock_service.acquire_lock(order_id, self.identity)
        if not result.granted:
            raise LockConflict(order_id, result.held_by)

    def switch_tab(self, tab_id: str) -> Tab:
        """Activate a tab; only the order becoming active gets its lease renewed."""
        with self._mutex:
            tab = self.get_tab(tab_id)
            self._activate(tab)
            if tab.order.is_persisted and tab.holds_lock:
                if not lock_service.renew_lock(tab.order.id, self.identity):
                    current_app.logger.warning("Could not renew lease on order %s", tab.order.id)
            return tab

    def close_tab(self, tab_id: str) -> Tab:
        """
        Close a tab and release its lease. Returns the tab active afterwards.
        """
        with self._mutex:
            tab = self.get_tab(tab_id)
            if tab.settling:
                raise ValidationError("Cannot close a tab while its payment is being processed",
                                      details={"tab_id": tab_id})

            if tab.order.is_persisted and tab.holds_lock:
                lock_service.release_lock(tab.order.id, self.identity)
                tab.holds_lock = False

            was_active = tab.is_active
            self._tabs.remove(tab)

            if not self._tabs:
                return self.new_tab()
            if was_active:
                self._activate(self._tabs[-1])
            return self.active_tab

    # -- editing ---------------------------------------------------------

    def update_tab_order(self, tab_id: str, fn: Callable[..., Order], *args, **kwargs) -> Tab:
        """Apply an order_builder function to a tab's order and mark it dirty."""
        with self._mutex:
            tab = self.get_tab(tab_id)
            if tab.settling:
                raise ValidationError("Order is being settled", details={"tab_id": tab_id})
            tab.order = fn(tab.order, *args, **kwargs)
            tab.dirty = True
            return tab

    def update_active_order(self, fn: Callable[..., Order], *args, **kwargs) -> Tab:
        return self.update_tab_order(self.active_tab.id, fn, *args, **kwargs)

    def save_tab(self, tab_id: str) -> Tab:
        """
        Persist a tab's order. A first save gives the order its real id; the
        tab does not take a lease on it until the order is reopened.
        """
        with self._mutex:
            tab = self.get_tab(tab_id)
            saved = order_store.save_order(tab.order, self.identity)
            tab.order = saved
            self.mark_saved(tab_id)
            return tab

    def save_active(self) -> Tab:
        return self.save_tab(self.active_tab.id)

    def mark_saved(self, tab_id: str) -> None:
        with self._mutex:
            self.get_tab(tab_id).dirty = False

    # -- leases ----------------------------------------------------------

    def heartbeat(self) -> bool:
        """
        Renew the lease of the active tab only.

        When renewal fails (the lease lapsed and was swept) try to take it
        again; if someone else took it meanwhile, the tab loses its lease.
        """
        with self._mutex:
            tab = self.active_tab
            if not tab.order.is_persisted or not tab.holds_lock:
                return True
            if lock_service.renew_lock(tab.order.id, self.identity):
                return True

            result = lock_service.acquire_lock(tab.order.id, self.identity)
            if not result.granted:
                tab.holds_lock = False
                current_app.logger.warning(
                    "Lease on order %s lost to %s", tab.order.id, result.held_by or "another session"
                )
            return result.granted

    # -- settlement ------------------------------------------------------

    def settle_tab(
        self,
        tab_id: str,
        tender: Tender,
        *,
        distribution: WarehouseDistribution | None = None,
        authorization: SettlementAuthorization | None = None,
    ) -> SettlementResult:
        """
        Settle a tab's order, then release its lease and close the tab.

        On any failure the tab stays open with its order untouched.
        """
        with self._mutex:
            tab = self.get_tab(tab_id)
            if tab.settling:
                raise ValidationError("Payment already in progress", details={"tab_id": tab_id})
            tab.settling = True
            try:
                result = settlement_service.confirm_payment(
                    tab.order,
                    tender,
                    self.identity,
                    distribution=distribution,
                    authorization=authorization,
                )
            finally:
                tab.settling = False

            self.close_tab(tab_id)
            return result

    def settle_active(self, tender: Tender, **kwargs) -> SettlementResult:
        return self.settle_tab(self.active_tab.id, tender, **kwargs)

    def teardown(self) -> int:
        """Release every lease this session holds; used when the terminal closes."""
        with self._mutex:
            for tab in self._tabs:
                tab.holds_lock = False
            return lock_service.release_session_locks(self.identity)


# =============================================================================
# SESSION REGISTRY
# =============================================================================

_sessions: dict[tuple[int, str], TabSession] = {}
_registry_mutex = threading.Lock()


def get_tab_session(identity: Identity, *, walk_in_name: str | None = None) -> TabSession:
    key = (identity.user_id, identity.session_id)
    with _registry_mutex:
        session = _sessions.get(key)
        if session is None:
            session = TabSession(identity, walk_in_name=walk_in_name)
            _sessions[key] = session
        return session


def end_tab_session(identity: Identity) -> int:
    with _registry_mutex:
        session = _sessions.pop((identity.user_id, identity.session_id), None)
    if session is None:
        return lock_service.release_session_locks(identity)
    return session.teardown()


def reset_tab_sessions() -> None:
    with _registry_mutex:
        _sessions.clear()
