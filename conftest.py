from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import credit_balance, get_balance, get_or_create_user, init_db
from models import Order, ReconciliationEntry
from vendor import SMMPanelAdapter
from workflow import OrderWorkflow

PANEL_URL = "https://panel.test/api/v2"
PANEL_KEY = "test-secret"

DEFAULT_SERVICES: List[Dict[str, Any]] = [
    {"service": 100, "name": "Windows 11 Pro Key", "category": "Keys", "type": "Default", "rate": "10", "min": 1, "max": 1},
    {"service": 200, "name": "Instagram Followers [Real]", "category": "Instagram Followers", "type": "Default", "rate": "5", "min": "50", "max": "10000"},
    {"service": 300, "name": "TikTok Views", "category": "TikTok", "type": "Default", "rate": "0.45", "min": 100, "max": 1000000},
    {"service": 400, "name": "Broken Rate", "category": "Misc", "type": "Default", "rate": "n/a", "min": 10, "max": 100},
]


class FakePanel:
    """In-memory SMM panel speaking the form protocol through httpx.MockTransport."""

    def __init__(self) -> None:
        self.services: Any = [dict(s) for s in DEFAULT_SERVICES]
        self.add_response: Optional[Any] = None
        self.statuses: Dict[str, Any] = {}
        self.requests: List[Dict[str, str]] = []
        self.add_hook: Optional[Callable[[Dict[str, str]], Any]] = None
        self._next_order = 9000

    @property
    def add_calls(self) -> List[Dict[str, str]]:
        return [r for r in self.requests if r.get("action") == "add"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        if form.get("key") != PANEL_KEY:
            return httpx.Response(200, json={"error": "Invalid API key"})

        action = form.get("action")
        if action == "services":
            return httpx.Response(200, json=self.services)
        if action == "add":
            if self.add_hook is not None:
                await self.add_hook(form)
            if self.add_response is not None:
                return httpx.Response(200, json=self.add_response)
            self._next_order += 1
            return httpx.Response(200, json={"order": self._next_order})
        if action == "status":
            value = self.statuses.get(form.get("order", ""))
            if isinstance(value, Exception):
                raise value
            if value is None:
                return httpx.Response(200, json={"error": "Incorrect order ID"})
            return httpx.Response(200, json={"charge": "0.27", "status": value, "currency": "USD"})
        return httpx.Response(200, json={"error": "Incorrect request"})


class RecordingAlerter:
    def __init__(self) -> None:
        self.messages: List[str] = []

    async def notify(self, text: str) -> int:
        self.messages.append(text)
        return 1


@pytest.fixture
def panel() -> FakePanel:
    return FakePanel()


@pytest.fixture
def adapter(panel: FakePanel) -> SMMPanelAdapter:
    return SMMPanelAdapter(PANEL_URL, PANEL_KEY, timeout=5.0, transport=httpx.MockTransport(panel.handler))


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def alerter() -> RecordingAlerter:
    return RecordingAlerter()


@pytest.fixture
def workflow(session_factory, adapter, alerter) -> OrderWorkflow:
    return OrderWorkflow(session_factory, adapter, alerter, services_cache_seconds=60)


@pytest.fixture
def make_user(session_factory):
    async def _make(username: str, balance: str = "0") -> int:
        async with session_factory() as session:
            async with session.begin():
                user = await get_or_create_user(session, username)
                if Decimal(balance) > 0:
                    await credit_balance(session, user.id, Decimal(balance))
                return user.id

    return _make


@pytest.fixture
def ledger(session_factory):
    """Read helpers for asserting on persisted state."""

    class _Ledger:
        async def balance(self, user_id: int) -> Decimal:
            async with session_factory() as session:
                return await get_balance(session, user_id)

        async def order_count(self, user_id: Optional[int] = None) -> int:
            stmt = select(func.count(Order.id))
            if user_id is not None:
                stmt = stmt.where(Order.user_id == user_id)
            async with session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())

        async def reconciliation(self) -> List[ReconciliationEntry]:
            async with session_factory() as session:
                return list((await session.execute(select(ReconciliationEntry))).scalars().all())

    return _Ledger()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)
