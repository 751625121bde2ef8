"""
Pytest configuration and fixtures.

Every test gets its own SQLite file so that savepoints, unique constraints
and conditional updates behave as they do on PostgreSQL. Gateways are faked
with an ``httpx.MockTransport``; side effects are recorded instead of sent.
"""
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Set, Tuple

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from order_payments.api.dependencies import Services, build_services
from order_payments.api.main import create_app
from order_payments.config import Settings
from order_payments.core import (
    IdempotencyGuard,
    OrderLedger,
    OrderStatus,
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    ReconciliationEngine,
    SettlementPipeline,
    SideEffectAction,
    SideEffectDispatcher,
    SourceChannel,
)
from order_payments.core.dispatch import ActionHandler
from order_payments.database.connection import init_db, make_engine, make_session_factory
from order_payments.database.models import Order

WEBHOOK_SECRET = "flw_test_webhook_secret"
ADMIN_KEY = "admin_test_key"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders_test.db'}",
        app_name="order-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        admin_api_key=ADMIN_KEY,
        flutterwave_secret_key="FLWSECK_TEST-fake-key-for-testing",
        flutterwave_webhook_secret=WEBHOOK_SECRET,
        pesapal_consumer_key="pesapal_test_key",
        pesapal_consumer_secret="pesapal_test_secret",
        pesapal_ipn_id="ipn-test-id",
        paypal_client_id="paypal_test_client",
        paypal_client_secret="paypal_test_secret",
        inventory_service_url="http://inventory.test",
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh database for one test."""
    engine = make_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """
    Single session for tests that drive one component directly.

    Tests that also open other sessions (pipeline, dispatcher) must not hold
    this one open across those calls.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


class RecordingHandlers:
    """Side-effect handlers that remember every call and can be told to fail."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, str]] = []
        self.failing: Set[SideEffectAction] = set()

    def handlers(self) -> Dict[SideEffectAction, ActionHandler]:
        def make(action: SideEffectAction) -> ActionHandler:
            async def handler(order: Order, status: OrderStatus) -> None:
                self.calls.append((action.value, order.id, status.value))
                if action in self.failing:
                    raise RuntimeError(f"{action.value} provider down")

            return handler

        return {action: make(action) for action in SideEffectAction}

    def count(self, action: SideEffectAction, status: Optional[str] = None) -> int:
        return len(
            [c for c in self.calls if c[0] == action.value and (status is None or c[2] == status)]
        )


@pytest.fixture
def recorder() -> RecordingHandlers:
    return RecordingHandlers()


class FakeGateways:
    """
    One ``MockTransport`` handler standing in for every outbound service.

    Tests adjust the canned answers and inspect ``requests`` afterwards.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.pesapal_http_status = 200
        self.pesapal_status: Dict[str, Any] = {
            "status_code": 0,
            "payment_status_description": "INVALID",
            "merchant_reference": None,
            "amount": None,
            "currency": "UGX",
        }
        self.paypal_capture: Dict[str, Any] = {}
        self.inventory_http_status = 200

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        # Pesapal
        if path.endswith("/api/Auth/RequestToken"):
            return httpx.Response(
                200, json={"token": "pesapal-token", "expiryDate": "2099-01-01T00:00:00.000Z"}
            )
        if path.endswith("/api/Transactions/GetTransactionStatus"):
            return httpx.Response(self.pesapal_http_status, json=self.pesapal_status)
        if path.endswith("/api/Transactions/SubmitOrderRequest"):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "order_tracking_id": f"trk-{body['id']}",
                    "merchant_reference": body["id"],
                    "redirect_url": "https://pay.pesapal.test/iframe",
                },
            )

        # PayPal
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 3600})
        if path.startswith("/v2/checkout/orders") and path.endswith("/capture"):
            return httpx.Response(201, json=self.paypal_capture)
        if path == "/v2/checkout/orders":
            body = json.loads(request.content)
            unit = body["purchase_units"][0]
            return httpx.Response(
                201,
                json={
                    "id": f"PP-{unit['reference_id']}",
                    "status": "CREATED",
                    "purchase_units": [{"reference_id": unit["reference_id"]}],
                    "links": [
                        {"href": "https://paypal.test/approve", "rel": "approve", "method": "GET"}
                    ],
                },
            )

        # Flutterwave
        if path.endswith("/charges"):
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "message": "Charge initiated",
                    "data": {"id": 4242, "status": "pending"},
                    "meta": {"authorization": {"mode": "redirect", "redirect": "https://flw.test/auth"}},
                },
            )

        # Inventory
        if path == "/reservations/release":
            return httpx.Response(self.inventory_http_status, json={})

        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})


@pytest.fixture
def gateways() -> FakeGateways:
    return FakeGateways()


@pytest_asyncio.fixture
async def http_client(gateways: FakeGateways) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateways)) as client:
        yield client


@pytest.fixture
def ledger() -> OrderLedger:
    return OrderLedger()


@pytest.fixture
def dispatcher(
    session_factory: async_sessionmaker[AsyncSession], recorder: RecordingHandlers
) -> SideEffectDispatcher:
    return SideEffectDispatcher(
        session_factory, handlers=recorder.handlers(), max_attempts=3, base_delay_seconds=30.0
    )


@pytest.fixture
def engine(ledger: OrderLedger, dispatcher: SideEffectDispatcher) -> ReconciliationEngine:
    return ReconciliationEngine(ledger=ledger, dispatcher=dispatcher, cod_tolerance=Decimal("1000"))


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard(retention_hours=72)


@pytest.fixture
def pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    guard: IdempotencyGuard,
    engine: ReconciliationEngine,
    dispatcher: SideEffectDispatcher,
) -> SettlementPipeline:
    return SettlementPipeline(session_factory, guard, engine, dispatcher)


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession], ledger: OrderLedger
) -> Any:
    """Create and commit an order in its own session."""

    async def _make_order(
        order_id: str,
        total: str = "50000",
        currency: str = "UGX",
        payment_method: PaymentMethod = PaymentMethod.MTN_MOMO,
        **fields: Any,
    ) -> Order:
        async with session_factory() as db:
            order = await ledger.create_order(
                db,
                total=Decimal(total),
                currency=currency,
                payment_method=payment_method,
                order_id=order_id,
                **fields,
            )
            await db.commit()
        return order

    return _make_order


@pytest.fixture
def load_order(session_factory: async_sessionmaker[AsyncSession], ledger: OrderLedger) -> Any:
    """Read an order back in a fresh session."""

    async def _load_order(order_id: str) -> Order:
        async with session_factory() as db:
            return await ledger.require_order(db, order_id)

    return _load_order


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    recorder: RecordingHandlers,
) -> AsyncGenerator[Services, Any]:
    """Full object graph wired against the test database and fake gateways."""
    services = build_services(test_settings, session_factory=session_factory, http_client=http_client)
    services.dispatcher.handlers = recorder.handlers()
    for client in (services.pesapal_client, services.paypal_client, services.flutterwave_client):
        client.retry_wait_seconds = 0
    yield services


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, services: Services
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, services=services, initialize_database=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY, "X-Admin-Actor": "ops@shop.test"}


@pytest.fixture
def make_event() -> Any:
    """Build a normalized payment event with sensible defaults."""

    def _make_event(
        order_ref: str,
        amount: str = "50000",
        dedup_key: Optional[str] = None,
        outcome: PaymentOutcome = PaymentOutcome.SUCCESSFUL,
        source_channel: SourceChannel = SourceChannel.PUSH_WEBHOOK,
        payment_method: PaymentMethod = PaymentMethod.MTN_MOMO,
        external_reference: Optional[str] = None,
        currency: str = "UGX",
    ) -> PaymentEvent:
        return PaymentEvent(
            dedup_key=dedup_key or f"test:{order_ref}:{amount}:{outcome.value}",
            order_ref=order_ref,
            reported_amount=Decimal(amount),
            reported_currency=currency,
            outcome=outcome,
            source_channel=source_channel,
            payment_method=payment_method,
            external_reference=external_reference,
        )

    return _make_event
