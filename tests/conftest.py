import os

# Offline embeddings for every test; must be set before supportrag.config is imported
os.environ.setdefault("SUPPORTRAG_TEST_MODE", "true")
os.environ.setdefault("SUPPORTRAG_API_KEY", "test-key")

from collections import deque  # noqa: E402

import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402
from sqlalchemy.dialects import postgresql  # noqa: E402

from supportrag.services.access import ViewerScope  # noqa: E402


class FakeResult:
    """Stands in for a SQLAlchemy Result with canned rows."""

    def __init__(self, rows=None, scalars=None, one=None, scalar=None):
        self._rows = list(rows or [])
        self._scalars = list(scalars or [])
        self._one = one
        self._scalar = scalar

    # Row access
    def all(self):
        return list(self._rows)

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def one(self):
        return self._one if self._one is not None else self._rows[0]

    def one_or_none(self):
        return self._one

    # Scalar access
    def scalars(self):
        return self

    def first(self):
        return self._scalars[0] if self._scalars else None

    def scalar_one(self):
        return self._scalar

    def scalar_one_or_none(self):
        return self._scalar if self._scalar is not None else self.first()


class _NestedTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """
    Minimal AsyncSession double.

    execute() returns queued FakeResults in order (an empty result once the
    queue runs out) and records every statement; get() reads from `objects`.
    """

    def __init__(self, results=None, objects=None, on_refresh=None):
        self.results = deque(results or [])
        self.objects = dict(objects or {})
        self.on_refresh = on_refresh
        self.executed = []
        self.added = []
        self.commits = 0
        self.rollbacks = 0

    async def execute(self, statement, params=None):
        self.executed.append((statement, params))
        return self.results.popleft() if self.results else FakeResult()

    async def get(self, model, key):
        return self.objects.get((model, key))

    def add(self, obj):
        self.added.append(obj)

    def begin_nested(self):
        return _NestedTransaction()

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def refresh(self, obj, attribute_names=None):
        if self.on_refresh:
            self.on_refresh(obj)

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSessionFactory:
    """Callable like async_sessionmaker; hands out one shared FakeSession."""

    def __init__(self, session=None):
        self.session = session or FakeSession()
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.session


class FakeRedis:
    """Minimal redis.asyncio client double: get and setex over a dict."""

    def __init__(self, down: bool = False):
        self.values = {}
        self.ttls = {}
        self.down = down

    async def get(self, key):
        if self.down:
            raise RedisConnectionError("Connection refused")
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        if self.down:
            raise RedisConnectionError("Connection refused")
        self.values[key] = value
        self.ttls[key] = ttl


def compile_sql(clause) -> str:
    """Render a clause with inlined parameters for assertions."""
    return str(
        clause.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})
    )


def make_scope(
    role: str = "agent",
    customers=(),
    departments=(),
    is_external: bool = False,
    user_id: str = "user-1",
) -> ViewerScope:
    return ViewerScope(
        user_id=user_id,
        role=role,
        is_admin=role == "admin",
        is_manager=role == "manager",
        is_external=is_external,
        allow_internal=not is_external,
        allowed_customer_ids=frozenset(customers),
        allowed_departments=tuple(departments),
    )


@pytest.fixture
def admin_scope():
    return make_scope(role="admin", departments=("*",), user_id="admin-1")


@pytest.fixture
def agent_scope():
    return make_scope(customers=(7,), user_id="agent-1")


@pytest.fixture
def fake_session():
    return FakeSession()
