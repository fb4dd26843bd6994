"""
Pytest fixtures for till service tests.

Provides the app with an in-memory local database, a fake hosted backend
served through httpx.MockTransport, and a test client with cashier headers.
"""

import json
import re
from datetime import timedelta

import httpx
import pytest

from pharmapos import create_app
from pharmapos.extensions import db
from pharmapos.services.backend_client import SupabaseClient
from pharmapos.services.checkout_service import CheckoutContext, SaleReconciliationEngine
from pharmapos.services.inventory_service import Connectivity, InventorySnapshotProvider
from pharmapos.services.offline_sync_service import SaleCommitter
from pharmapos.services.till_service import CONNECTIVITY_KEY, REGISTRY_KEY
from pharmapos.time_utils import utcnow


PHARMACY_ID = "pharm-1"
OTHER_PHARMACY_ID = "pharm-2"
BACKEND_URL = "http://backend.test"


def days_from_today(days: int) -> str:
    return (utcnow().date() + timedelta(days=days)).isoformat()


def medication_row(product_id, name, stock, unit_price, selling_price=None, **extra):
    """Backend medications row (prices in major units, as PostgREST returns them)."""
    row = {
        "id": product_id,
        "pharmacy_id": PHARMACY_ID,
        "name": name,
        "category": "General",
        "current_stock": stock,
        "reorder_level": 5,
        "unit_price": unit_price,
        "selling_price": selling_price,
        "expiry_date": days_from_today(365),
        "batch_number": f"B-{product_id}",
        "barcode_id": None,
        "dispensing_unit": "unit",
        "is_shelved": True,
    }
    row.update(extra)
    return row


def _eq(value):
    return value[3:] if value and value.startswith("eq.") else value


def _in(value):
    # in.("a","b")
    inner = value[len("in.("):-1]
    return [part.strip().strip('"') for part in inner.split(",") if part.strip()]


class FakeBackend:
    """
    In-memory stand-in for the Supabase REST API.

    commit_failures is a queue consumed by sale commits: "unavailable"
    raises a connection error, a (status, body) tuple answers with an error.
    """

    def __init__(self):
        self.medications = []
        self.branch_inventory = []
        self.pending = []
        self.pharmacies = {}
        self.branches = {}
        self.commit_calls = []
        self.commit_failures = []
        self.unreachable = False
        self.requests = []
        self._receipts_by_key = {}
        self._seq = 0

    @property
    def transport(self):
        return httpx.MockTransport(self.handle)

    def client(self, access_token="cashier-token"):
        return SupabaseClient(BACKEND_URL, "anon-test-key", access_token=access_token, transport=self.transport)

    def _next(self, prefix):
        self._seq += 1
        return f"{prefix}-{self._seq:04d}"

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path.startswith("/rest/v1"):
            path = path[len("/rest/v1"):]
        params = request.url.params
        method = request.method

        if method == "GET" and path in ("", "/"):
            return httpx.Response(200, json={})

        if method == "GET" and path == "/medications":
            rows = [r for r in self.medications if r["pharmacy_id"] == _eq(params.get("pharmacy_id"))]
            if params.get("id"):
                ids = _in(params["id"])
                rows = [r for r in rows if r["id"] in ids]
            return httpx.Response(200, json=sorted(rows, key=lambda r: r["name"]))

        if method == "GET" and path == "/branch_inventory":
            rows = [r for r in self.branch_inventory if r["branch_id"] == _eq(params.get("branch_id"))]
            if params.get("medication_id"):
                ids = _in(params["medication_id"])
                rows = [r for r in rows if r["medication_id"] in ids]
            return httpx.Response(200, json=rows)

        if method == "GET" and path == "/pharmacies":
            row = self.pharmacies.get(_eq(params.get("id")))
            return httpx.Response(200, json=[row] if row else [])

        if method == "GET" and path == "/branches":
            row = self.branches.get(_eq(params.get("id")))
            return httpx.Response(200, json=[row] if row else [])

        if method == "POST" and path == "/rpc/complete_sale":
            return self._commit(request)

        if method == "POST" and path == "/pending_transactions":
            row = json.loads(request.content)
            row = dict(row, id=self._next("pt"), created_at=utcnow().isoformat() + "Z")
            self.pending.append(row)
            return httpx.Response(201, json=[row])

        if method == "GET" and path == "/pending_transactions":
            match = re.search(r"short_code\.ilike\.\*(.+?)\*", params.get("or", ""))
            term = match.group(1).lower() if match else ""
            rows = [
                r for r in self.pending
                if r["pharmacy_id"] == _eq(params.get("pharmacy_id"))
                and r["status"] == "pending"
                and (term in r["short_code"].lower() or term in r["barcode"].lower())
            ]
            if params.get("branch_id"):
                rows = [r for r in rows if r.get("branch_id") == _eq(params["branch_id"])]
            if params.get("id"):
                rows = [r for r in rows if r["id"] == _eq(params["id"])]
            return httpx.Response(200, json=rows[:1])

        if method == "PATCH" and path == "/pending_transactions":
            changes = json.loads(request.content)
            updated = []
            for row in self.pending:
                if row["id"] == _eq(params.get("id")) and row["status"] == _eq(params.get("status")):
                    row.update(changes)
                    updated.append(dict(row))
            return httpx.Response(200, json=updated)

        return httpx.Response(404, json={"message": f"no route {method} {path}", "code": "PGRST000"})

    def _commit(self, request):
        sale = json.loads(request.content)["p_sale"]
        self.commit_calls.append(sale)

        if self.commit_failures:
            failure = self.commit_failures.pop(0)
            if failure == "unavailable":
                raise httpx.ConnectError("connection reset", request=request)
            status, body = failure
            return httpx.Response(status, json=body)

        key = sale["idempotency_key"]
        if key not in self._receipts_by_key:
            self._receipts_by_key[key] = self._next("RCP")
        return httpx.Response(200, json={"receipt_id": self._receipts_by_key[key]})

    @property
    def committed_receipts(self):
        return dict(self._receipts_by_key)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SUPABASE_URL': BACKEND_URL,
        'SUPABASE_ANON_KEY': 'anon-test-key',
        'START_OFFLINE': False,
        'DEFAULT_CURRENCY': 'NGN',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def fresh_till_state(app):
    """Tills and the connectivity flag live in process memory."""
    app.extensions[REGISTRY_KEY].reset()
    app.extensions[CONNECTIVITY_KEY].set_offline(False)
    yield


@pytest.fixture(scope='function')
def backend(app):
    """Fake hosted backend, also wired into routes via app.extensions."""
    fake = FakeBackend()
    app.extensions["pharmapos.backend_transport"] = fake.transport
    yield fake
    app.extensions.pop("pharmapos.backend_transport", None)


@pytest.fixture(scope='function')
def client(app, db_session, backend):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {
        "Authorization": "Bearer cashier-token",
        "X-Pharmacy-Id": PHARMACY_ID,
        "X-Staff-Name": "Ada Obi",
        "X-Shift-Id": "shift-9",
    }


@pytest.fixture
def connectivity():
    return Connectivity()


@pytest.fixture
def inventory(db_session, backend, connectivity):
    return InventorySnapshotProvider(
        client=backend.client(),
        pharmacy_id=PHARMACY_ID,
        branch_id=None,
        connectivity=connectivity,
    )


@pytest.fixture
def engine(inventory, backend):
    return SaleReconciliationEngine(
        context=CheckoutContext(pharmacy_id=PHARMACY_ID, staff_name="Ada Obi", shift_id="shift-9"),
        inventory=inventory,
        committer=SaleCommitter(inventory.client),
    )
