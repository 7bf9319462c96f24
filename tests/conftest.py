"""Shared fixtures: an in-memory stand-in for the Supabase async client."""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError

from kidpoints.models import ChildIdentity
from kidpoints.services.session_store import MemoryTier, SessionStore

FAMILY_ID = "11111111-1111-4111-8111-111111111111"
OTHER_FAMILY_ID = "22222222-2222-4222-8222-222222222222"
CHILD_ID = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"
CHILD_UID = "bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb"
SIBLING_ID = "cccccccc-cccc-4ccc-8ccc-cccccccccccc"


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


def _clause(expr: str) -> Callable[[Dict[str, Any]], bool]:
    col, op, value = expr.split(".", 2)
    if op == "eq":
        return lambda r: str(r.get(col)) == value
    if op == "is" and value == "null":
        return lambda r: r.get(col) is None
    raise ValueError(f"unsupported or_ clause: {expr}")


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None
        self._single = False

    def select(self, *_cols: str) -> "FakeQuery":
        return self

    def eq(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def in_(self, col: str, values: Any) -> "FakeQuery":
        values = list(values)
        self.filters.append(lambda r: r.get(col) in values)
        return self

    def is_(self, col: str, value: str) -> "FakeQuery":
        assert value == "null"
        self.filters.append(lambda r: r.get(col) is None)
        return self

    def gte(self, col: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(col) is not None and str(r.get(col)) >= str(value))
        return self

    def or_(self, expr: str) -> "FakeQuery":
        clauses = [_clause(c) for c in expr.split(",")]
        self.filters.append(lambda r: any(c(r) for c in clauses))
        return self

    def order(self, col: str, desc: bool = False) -> "FakeQuery":
        self._order = (col, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    def maybe_single(self) -> "FakeQuery":
        self._single = True
        return self

    async def execute(self) -> Optional[FakeResponse]:
        self.db.calls.append(("table", self.table))
        source = self.db.tables.get(self.table, [])
        if isinstance(source, Exception):
            raise source
        rows = [dict(r) for r in source if all(f(r) for f in self.filters)]
        if self._order:
            col, desc = self._order
            rows.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
        if self._limit is not None:
            rows = rows[: self._limit]
        if self._single:
            return FakeResponse(rows[0]) if rows else None
        return FakeResponse(rows)


class FakeRpc:
    def __init__(self, db: "FakeSupabase", fn: str, params: Dict[str, Any]) -> None:
        self.db = db
        self.fn = fn
        self.params = params

    async def execute(self) -> FakeResponse:
        self.db.calls.append(("rpc", self.fn, dict(self.params)))
        if self.fn not in self.db.rpcs:
            raise APIError({"message": f"Could not find the function public.{self.fn}", "code": "PGRST202"})
        handler = self.db.rpcs[self.fn]
        if isinstance(handler, Exception):
            raise handler
        value = handler(self.params) if callable(handler) else handler
        if inspect.isawaitable(value):
            value = await value
        return FakeResponse(value)


class FakeChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self.bindings: List[Dict[str, Any]] = []
        self.subscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.bindings.append(
            {"event": event, "table": table, "schema": schema, "filter": filter, "callback": callback}
        )
        return self

    async def subscribe(self, callback=None):
        self.subscribed = True
        return self

    def emit(self, table: str, payload: Dict[str, Any], event: str = "INSERT") -> None:
        for b in self.bindings:
            if b["table"] == table and b["event"] in ("*", event):
                b["callback"](payload)


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: Dict[str, Any] = {}
        self.rpcs: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.channels: List[FakeChannel] = []
        self.removed: List[FakeChannel] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, fn: str, params: Optional[Dict[str, Any]] = None) -> FakeRpc:
        return FakeRpc(self, fn, params or {})

    def channel(self, name: str) -> FakeChannel:
        ch = FakeChannel(name)
        self.channels.append(ch)
        return ch

    async def remove_channel(self, channel: FakeChannel) -> None:
        self.removed.append(channel)

    def rpc_calls(self, fn: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] == "rpc" and (fn is None or c[1] == fn)]

    def table_calls(self, name: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] == "table" and (name is None or c[1] == name)]


def slow(value: Any, delay: float = 1.0) -> Callable[[Dict[str, Any]], Any]:
    async def _handler(_params):
        await asyncio.sleep(delay)
        return value

    return _handler


@pytest.fixture
def sb() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def session_tier() -> MemoryTier:
    return MemoryTier()


@pytest.fixture
def durable_tier() -> MemoryTier:
    return MemoryTier()


@pytest.fixture
def store(session_tier, durable_tier) -> SessionStore:
    return SessionStore(session_tier, durable_tier)


@pytest.fixture
def child() -> ChildIdentity:
    return ChildIdentity(
        canonical_id=CHILD_ID,
        legacy_uid=CHILD_UID,
        family_id=FAMILY_ID,
        nickname="Sam",
        display_name="Samantha",
    )
