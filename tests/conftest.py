"""Pytest configuration and fixtures."""

import copy
import json
import os
import re
import secrets
import sys
from datetime import datetime, timezone

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
else:
    from pathlib import Path

    from dotenv import load_dotenv

    if not os.environ.get("CONFIRM_INTEGRATION_CREDENTIALS"):
        print("Integration tests use REAL credentials from .env", file=sys.stderr)
        pytest.exit(
            "Integration tests require CONFIRM_INTEGRATION_CREDENTIALS=yes",
            returncode=1,
        )
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)

import stripe  # noqa: E402
from dateutil import parser as date_parser  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402

from quickjob.auth import create_access_token  # noqa: E402
from quickjob.clock import FixedClock, get_clock  # noqa: E402
from quickjob.config import get_settings  # noqa: E402
from quickjob.database import get_db  # noqa: E402
from quickjob.main import app  # noqa: E402
from quickjob.payments import get_payment_gateway  # noqa: E402
from quickjob.rate_limit import limiter  # noqa: E402

# Frozen "now" used by every API test unless a test builds its own clock
NOW = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# In-memory Supabase
# =============================================================================


class MockExecuteResult:
    """Mock Supabase execute() result."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count


def _same(a, b) -> bool:
    return a == b or (a is not None and b is not None and str(a) == str(b))


def _comparable(value):
    if isinstance(value, str):
        try:
            dt = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return value
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return value


def _ilike(value, pattern: str) -> bool:
    if value is None:
        return False
    regex = "^" + ".*".join(re.escape(part) for part in pattern.split("%")) + "$"
    return re.match(regex, str(value), re.IGNORECASE | re.DOTALL) is not None


class MockQueryBuilder:
    """One PostgREST request against a :class:`FakeSupabase` table."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._columns = "*"
        self._payload = None
        self._on_conflict = None
        self._filters = []
        self._order = []
        self._limit = None

    # -- operations -----------------------------------------------------

    def select(self, columns: str = "*", count: str = None) -> "MockQueryBuilder":
        self._columns = columns
        return self

    def insert(self, data) -> "MockQueryBuilder":
        self._op, self._payload = "insert", data
        return self

    def update(self, data: dict) -> "MockQueryBuilder":
        self._op, self._payload = "update", data
        return self

    def upsert(self, data, on_conflict: str = None) -> "MockQueryBuilder":
        self._op, self._payload, self._on_conflict = "upsert", data, on_conflict
        return self

    def delete(self) -> "MockQueryBuilder":
        self._op = "delete"
        return self

    # -- filters --------------------------------------------------------

    def _add(self, fn) -> "MockQueryBuilder":
        self._filters.append(fn)
        return self

    def eq(self, column, value):
        return self._add(lambda r: _same(r.get(column), value))

    def neq(self, column, value):
        return self._add(lambda r: not _same(r.get(column), value))

    def in_(self, column, values):
        return self._add(lambda r: any(_same(r.get(column), v) for v in values))

    def _cmp(self, column, value, op):
        def check(row):
            current = row.get(column)
            if current is None:
                return False
            return op(_comparable(current), _comparable(value))

        return self._add(check)

    def gt(self, column, value):
        return self._cmp(column, value, lambda a, b: a > b)

    def gte(self, column, value):
        return self._cmp(column, value, lambda a, b: a >= b)

    def lt(self, column, value):
        return self._cmp(column, value, lambda a, b: a < b)

    def lte(self, column, value):
        return self._cmp(column, value, lambda a, b: a <= b)

    def ilike(self, column, pattern):
        return self._add(lambda r: _ilike(r.get(column), pattern))

    def or_(self, filters: str):
        clauses = []
        for clause in filters.split(","):
            column, op, value = clause.split(".", 2)
            if op == "ilike":
                clauses.append(lambda r, c=column, v=value: _ilike(r.get(c), v))
            elif op == "eq":
                clauses.append(lambda r, c=column, v=value: _same(r.get(c), v))
            else:
                raise NotImplementedError(op)
        return self._add(lambda r: any(c(r) for c in clauses))

    def order(self, column, desc: bool = False):
        self._order.append((column, desc))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    # -- execution ------------------------------------------------------

    def _matching(self) -> list[dict]:
        return [r for r in self._db.tables.setdefault(self._table, []) if all(f(r) for f in self._filters)]

    def _project(self, row: dict) -> dict:
        if self._columns.strip() == "*":
            return copy.deepcopy(row)
        columns = [c.strip() for c in self._columns.split(",")]
        return {c: copy.deepcopy(row.get(c)) for c in columns}

    def execute(self) -> MockExecuteResult:
        self._db.log.append((self._table, self._op))
        if self._op == "select":
            rows = self._matching()
            for column, desc in reversed(self._order):
                rows = sorted(
                    rows,
                    key=lambda r: (r.get(column) is None, _comparable(r.get(column)) if r.get(column) is not None else 0),
                    reverse=desc,
                )
            if self._limit is not None:
                rows = rows[: self._limit]
            return MockExecuteResult([self._project(r) for r in rows], count=len(rows))

        if self._op == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            return MockExecuteResult([self._db.insert_row(self._table, row) for row in payload])

        if self._op == "update":
            rows = self._matching()
            for row in rows:
                self._db.check_unique(self._table, {**row, **self._payload}, ignore=row)
                row.update(copy.deepcopy(self._payload))
            return MockExecuteResult([copy.deepcopy(r) for r in rows])

        if self._op == "upsert":
            keys = [k.strip() for k in (self._on_conflict or "id").split(",")]
            existing = [
                r for r in self._db.tables.setdefault(self._table, [])
                if all(_same(r.get(k), self._payload.get(k)) for k in keys)
            ]
            if existing:
                existing[0].update(copy.deepcopy(self._payload))
                return MockExecuteResult([copy.deepcopy(existing[0])])
            return MockExecuteResult([self._db.insert_row(self._table, self._payload)])

        if self._op == "delete":
            rows = self._matching()
            self._db.tables[self._table] = [r for r in self._db.tables[self._table] if r not in rows]
            return MockExecuteResult([copy.deepcopy(r) for r in rows])

        raise NotImplementedError(self._op)


class FakeSupabase:
    """In-memory stand-in for the Supabase client with unique constraints."""

    UNIQUE = {
        "users": [("email",)],
        "job_applications": [("student_id", "job_id")],
        "student_stripe_accounts": [("student_id",)],
        "payments": [("payment_intent_id",)],
    }

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.log: list[tuple[str, str]] = []
        self._next_id: dict[str, int] = {}

    def table(self, name: str) -> MockQueryBuilder:
        return MockQueryBuilder(self, name)

    def check_unique(self, table: str, row: dict, ignore: dict | None = None) -> None:
        for columns in self.UNIQUE.get(table, []):
            for other in self.tables.get(table, []):
                if other is ignore:
                    continue
                if all(_same(other.get(c), row.get(c)) for c in columns):
                    raise APIError(
                        {
                            "message": f'duplicate key value violates unique constraint "{table}_{"_".join(columns)}_key"',
                            "code": "23505",
                            "details": "",
                            "hint": "",
                        }
                    )

    def insert_row(self, table: str, data: dict) -> dict:
        row = copy.deepcopy(data)
        self.check_unique(table, row)
        if row.get("id") is None:
            self._next_id[table] = self._next_id.get(table, 0) + 1
            row["id"] = self._next_id[table]
        else:
            self._next_id[table] = max(self._next_id.get(table, 0), int(row["id"]))
        row.setdefault("created_at", NOW.isoformat())
        self.tables.setdefault(table, []).append(row)
        return copy.deepcopy(row)

    def seed(self, table: str, *rows: dict) -> list[dict]:
        return [self.insert_row(table, row) for row in rows]

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])

    def row(self, table: str, row_id) -> dict | None:
        return next((r for r in self.rows(table) if _same(r.get("id"), row_id)), None)

    def count(self, table: str, op: str) -> int:
        return sum(1 for t, o in self.log if t == table and o == op)


# =============================================================================
# Fake Stripe gateway
# =============================================================================


class FakeGateway:
    """Records Stripe calls; webhook signature is valid only when it equals 'valid'."""

    def __init__(self, fee_percent: float = 10.0, default_currency: str = "eur"):
        self.fee_percent = fee_percent
        self.default_currency = default_currency
        self.accounts: dict[str, dict] = {}
        self.intents: list[dict] = []
        self.links: list[str] = []

    async def create_express_account(self, student_id, email=None):
        account_id = f"acct_test_{len(self.accounts) + 1}"
        self.accounts[account_id] = {
            "id": account_id,
            "charges_enabled": False,
            "payouts_enabled": False,
            "details_submitted": False,
            "metadata": {"student_id": str(student_id)},
        }
        return self.accounts[account_id]

    async def retrieve_account(self, account_id):
        return self.accounts.setdefault(account_id, {"id": account_id, "details_submitted": True})

    async def create_onboarding_link(self, account_id):
        self.links.append(account_id)
        return {"url": f"https://connect.stripe.test/setup/{account_id}", "expires_at": 1746093600}

    async def create_payment_intent(self, amount, currency, destination, application_fee_amount=0, metadata=None):
        intent = {
            "id": f"pi_test_{len(self.intents) + 1}",
            "client_secret": f"pi_test_{len(self.intents) + 1}_secret",
            "amount": amount,
            "currency": currency,
            "destination": destination,
            "application_fee_amount": application_fee_amount,
            "metadata": {k: str(v) for k, v in (metadata or {}).items() if v is not None},
        }
        self.intents.append(intent)
        return intent

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Rate limit counters are process-wide; start every test from zero."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def client(db, gateway, clock):
    """Create a test client wired to the in-memory database, gateway and clock."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def make_headers():
    """Build auth headers for a user id and role."""

    def _make(user_id, role: str, email: str | None = None) -> dict:
        token = create_access_token(user_id, role, get_settings(), email=email)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin_headers(make_headers):
    return make_headers(900, "admin", "admin@quickjob.test")


@pytest.fixture
def marketplace(db):
    """Two clients, three students, one category."""
    db.seed(
        "users",
        {"id": 1, "email": "client1@quickjob.test", "role": "client", "phone": "+3211111111"},
        {"id": 2, "email": "client2@quickjob.test", "role": "client"},
        {"id": 10, "email": "student10@quickjob.test", "role": "student", "phone": "+3247000010",
         "created_at": "2025-01-10T10:00:00+00:00"},
        {"id": 11, "email": "student11@quickjob.test", "role": "student",
         "created_at": "2025-02-11T10:00:00+00:00"},
        {"id": 12, "email": "student12@quickjob.test", "role": "student",
         "created_at": "2025-03-12T10:00:00+00:00"},
    )
    db.seed(
        "student_profiles",
        {"id": 10, "verification_status": "verified", "school_name": "UGent"},
        {"id": 11, "verification_status": "pending", "school_name": "KU Leuven"},
        {"id": 12, "verification_status": "pending", "school_name": "VUB"},
    )
    db.seed(
        "job_categories",
        {"id": 2, "key": "garden", "name_nl": "Tuin", "name_fr": "Jardin", "name_en": "Garden"},
    )
    return db


@pytest.fixture
def make_job(db):
    """Insert a job row directly."""

    def _make(**fields) -> dict:
        row = {
            "client_id": 1,
            "category_id": 2,
            "title": "Mow lawn",
            "description": "Front and back garden",
            "area_text": "Gent",
            "city": "Gent",
            "hourly_or_fixed": "hourly",
            "hourly_rate": 15,
            "fixed_price": None,
            "start_time": "2025-06-01T10:00:00+00:00",
            "end_time": None,
            "status": "open",
            "updated_at": NOW.isoformat(),
        }
        row.update(fields)
        return db.seed("jobs", row)[0]

    return _make


@pytest.fixture
def make_application(db):
    def _make(job_id, student_id, status="pending", **fields) -> dict:
        row = {
            "job_id": job_id,
            "student_id": student_id,
            "status": status,
            "applied_at": NOW.isoformat(),
        }
        row.update(fields)
        return db.seed("job_applications", row)[0]

    return _make
