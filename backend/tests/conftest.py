"""
Shared fixtures: an in-memory Motor-style database, the wired app and
bearer tokens for each role.
"""
import asyncio
import copy
import os
import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

os.environ.setdefault("RATE_LIMIT_PER_MIN", "100000")
os.environ.setdefault("EMAIL_PROVIDER", "mock")

from fastapi.testclient import TestClient  # noqa: E402

import server  # noqa: E402
from services.security import create_access_token  # noqa: E402

TENANT = "tenant-1"


# ===========================================================
# IN-MEMORY MONGO
# ===========================================================

def _match_value(value, condition):
    if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$in" and value not in arg:
                return False
            if op == "$nin" and value in arg:
                return False
            if op == "$ne" and value == arg:
                return False
            if op == "$gte" and (value is None or value < arg):
                return False
            if op == "$lte" and (value is None or value > arg):
                return False
            if op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if value is None or not re.search(arg, str(value), flags):
                    return False
        return True
    return value == condition


def matches(doc, query):
    return all(_match_value(doc.get(key), cond) for key, cond in (query or {}).items())


def _project(doc):
    return {k: copy.deepcopy(v) for k, v in doc.items() if k != "_id"}


class MockAsyncCursor:
    """Mock Motor cursor supporting sort/skip/limit/to_list."""

    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for key, order in reversed(keys):
            self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key) or ""), reverse=order < 0)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [_project(d) for d in docs]


class MockAsyncCollection:
    """Mock Motor collection backed by a list of dicts."""

    def __init__(self, name):
        self.name = name
        self.documents = []
        self.fail_writes = 0

    def _maybe_fail(self):
        if self.fail_writes:
            self.fail_writes -= 1
            raise RuntimeError(f"{self.name} write failed")

    async def find_one(self, query=None, projection=None):
        for doc in self.documents:
            if matches(doc, query):
                return _project(doc)
        return None

    def find(self, query=None, projection=None):
        return MockAsyncCursor([d for d in self.documents if matches(d, query)])

    async def count_documents(self, query=None):
        return len([d for d in self.documents if matches(d, query)])

    async def insert_one(self, doc):
        self._maybe_fail()
        self.documents.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc.get("id"))

    async def update_one(self, query, update, upsert=False):
        self._maybe_fail()
        for doc in self.documents:
            if matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                for key, value in update.get("$push", {}).items():
                    doc.setdefault(key, []).append(copy.deepcopy(value))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            doc.update(copy.deepcopy(update.get("$set", {})))
            self.documents.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get("id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_one(self, query):
        for i, doc in enumerate(self.documents):
            if matches(doc, query):
                del self.documents[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def create_index(self, *args, **kwargs):
        return None


class MockDatabase:
    """Collections created on first access, by item or attribute."""

    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MockAsyncCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


# ===========================================================
# SEED DATA
# ===========================================================

EMPLOYEE = {
    "id": "emp-1", "tenant_id": TENANT, "employee_code": "E001", "first_name": "Asha",
    "last_name": "Rao", "email": "asha@example.com", "grade": "G1",
    "reporting_manager_id": "emp-mgr", "department_id": "dept-1", "status": "Active",
}
MANAGER = {
    "id": "emp-mgr", "tenant_id": TENANT, "employee_code": "E002", "first_name": "Vik",
    "last_name": "Menon", "email": "vik@example.com", "grade": "G3",
    "reporting_manager_id": None, "department_id": "dept-1", "status": "Active",
}
POLICY = {
    "id": "pol-1", "tenant_id": TENANT, "grade": "G1", "status": "Active",
    "air_travel": {"domestic": {"class": "Economy", "max_amount": 15000},
                   "international": {"class": "Economy", "max_amount": 60000}},
    "train_travel": {"class": "AC-II", "max_amount": 5000},
    "daily_allowance": {"A1": 2000, "A": 1500, "B": 1000, "C": 800},
    "hotel": {"category": "3 Star", "max_room_rent": 5000},
    "mileage_allowance": {"two_wheeler": 4, "four_wheeler": 10, "max_monthly_km": 1500},
    "advance_limit": {"percentage": 80, "max_amount": 0, "finance_approval_threshold": 50000},
    "claim_submission_deadline": 30,
    "escalation_threshold_amount": 25000,
}

# role -> (user_id, employee_id)
USERS = {
    "Employee": ("user-emp", "emp-1"),
    "Manager": ("user-mgr", "emp-mgr"),
    "HR Administrator": ("user-hr", "emp-hr"),
    "Finance Administrator": ("user-fin", "emp-fin"),
    "Payroll Administrator": ("user-pay", "emp-pay"),
    "Tenant Admin": ("user-admin", None),
}


def days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def headers_for(role, tenant_id=TENANT, user_id=None, employee_id=None):
    default_user, default_employee = USERS.get(role, ("user-x", None))
    token = create_access_token(
        user_id=user_id or default_user,
        tenant_id=tenant_id,
        role=role,
        email=f"{(user_id or default_user)}@example.com",
        employee_id=employee_id or default_employee,
    )
    return {"Authorization": f"Bearer {token}"}


# ===========================================================
# FIXTURES
# ===========================================================

@pytest.fixture
def mock_db():
    db = MockDatabase()
    db.employees.documents.extend([copy.deepcopy(EMPLOYEE), copy.deepcopy(MANAGER)])
    db.travel_policies.documents.append(copy.deepcopy(POLICY))
    return db


@pytest.fixture
def app_services(mock_db):
    return server.wire_dependencies(mock_db, max_attempts=3, retry_delay=0)


@pytest.fixture
def client(app_services):
    return TestClient(server.app)


@pytest.fixture
def drain(app_services):
    """Run queued audit entries and notifications."""
    def _drain():
        return asyncio.run(app_services.outbox.drain())
    return _drain


@pytest.fixture
def as_role():
    return headers_for


# ===========================================================
# SEED HELPERS
# ===========================================================

def seed_request(db, request_id="req-1", status="Approved", return_days_ago=5, **extra):
    doc = {
        "id": request_id, "tenant_id": TENANT, "employee_id": "emp-1",
        "travel_type": "Domestic", "purpose": "Client visit", "origin": "Pune", "destination": "Delhi",
        "mode": "Flight", "travel_class": "Economy", "estimated_amount": 20000,
        "departure_date": days_ago(return_days_ago + 3), "return_date": days_ago(return_days_ago),
        "status": status, "workflow_history": [], "created_utc": days_ago(10), "updated_utc": days_ago(10),
    }
    doc.update(extra)
    db.travel_requests.documents.append(doc)
    return doc


def seed_advance(db, advance_id="adv-1", request_id="req-1", status="Paid", amount=5000, **extra):
    doc = {
        "id": advance_id, "tenant_id": TENANT, "employee_id": "emp-1", "travel_request_id": request_id,
        "advance_amount": amount, "status": status, "workflow_history": [],
        "created_utc": days_ago(9), "updated_utc": days_ago(9),
    }
    doc.update(extra)
    db.travel_advances.documents.append(doc)
    return doc


def claim_body(request_id="req-1", fares=(12000,), room_rent=4000, **extra):
    body = {
        "travel_request_id": request_id,
        "claim_type": "Regular Travel",
        "travel_expenses": [{"mode": "Flight", "travel_class": "Economy", "amount": f} for f in fares],
        "accommodation": [{"hotel_name": "City Inn", "city": "Delhi", "room_rent": room_rent}],
        "daily_allowance": [{"city": "Delhi", "city_classification": "A", "days": 2, "rate": 1500}],
    }
    body.update(extra)
    return body
