# Overview: Per-register till state and the wiring of services for one request.

"""
Till Registry

A till is one register's in-progress sale: its cart and its submission
guard. Tills live in process memory (a cart is discarded if the service
restarts; held carts are the durable way to park one). The registry and the
device connectivity flag are stored on app.extensions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import threading

from flask import Flask, current_app

from .backend_client import SupabaseClient
from .cart_service import CartStore
from .checkout_service import CheckoutContext, SaleReconciliationEngine, SubmissionGuard
from .inventory_service import Connectivity, InventorySnapshotProvider
from .offline_sync_service import SaleCommitter
from .pending_service import PendingInvoiceService


REGISTRY_KEY = "pharmapos.tills"
CONNECTIVITY_KEY = "pharmapos.connectivity"


@dataclass
class Till:
    register_id: str
    pharmacy_id: str
    branch_id: str | None = None
    cart: CartStore = field(default_factory=CartStore)
    guard: SubmissionGuard = field(default_factory=SubmissionGuard)

    def to_dict(self) -> dict:
        return {
            "register_id": self.register_id,
            "pharmacy_id": self.pharmacy_id,
            "branch_id": self.branch_id,
            "checkout_in_progress": self.guard.in_flight,
            "cart": self.cart.to_dict(),
        }


class TillRegistry:
    """Tills keyed by (pharmacy, branch, register)."""

    def __init__(self):
        self._tills: dict[tuple[str, str, str], Till] = {}
        self._lock = threading.Lock()

    def get(self, pharmacy_id: str, branch_id: str | None, register_id: str) -> Till:
        key = (pharmacy_id, branch_id or "", register_id)
        with self._lock:
            till = self._tills.get(key)
            if till is None:
                till = Till(register_id=register_id, pharmacy_id=pharmacy_id, branch_id=branch_id)
                self._tills[key] = till
            return till

    def all(self) -> list[Till]:
        with self._lock:
            return list(self._tills.values())

    def reset(self) -> None:
        with self._lock:
            self._tills.clear()


def init_app(app: Flask) -> None:
    app.extensions[REGISTRY_KEY] = TillRegistry()
    app.extensions[CONNECTIVITY_KEY] = Connectivity(offline=app.config.get("START_OFFLINE", False))


def get_registry() -> TillRegistry:
    return current_app.extensions[REGISTRY_KEY]


def get_connectivity() -> Connectivity:
    return current_app.extensions[CONNECTIVITY_KEY]


# =============================================================================
# REQUEST WIRING
# =============================================================================

def build_client(access_token: str | None = None) -> SupabaseClient:
    """
    Backend client for the current app. Tests can install an httpx transport
    under app.extensions["pharmapos.backend_transport"].
    """
    transport = current_app.extensions.get("pharmapos.backend_transport")
    return SupabaseClient.from_config(current_app.config, access_token=access_token, transport=transport)


def build_inventory(client: SupabaseClient, context: CheckoutContext) -> InventorySnapshotProvider:
    return InventorySnapshotProvider(
        client=client,
        pharmacy_id=context.pharmacy_id,
        branch_id=context.branch_id,
        connectivity=get_connectivity(),
    )


def build_engine(client: SupabaseClient, context: CheckoutContext, till: Till) -> SaleReconciliationEngine:
    return SaleReconciliationEngine(
        context=context,
        inventory=build_inventory(client, context),
        committer=SaleCommitter(client),
        guard=till.guard,
    )


def build_pending_service(client: SupabaseClient, context: CheckoutContext) -> PendingInvoiceService:
    return PendingInvoiceService(client, context)
