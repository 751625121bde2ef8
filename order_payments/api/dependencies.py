"""
Composition root.

``Settings`` are read here and nowhere else: every adapter, client and core
component receives its configuration explicitly.
"""
import secrets
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.channels import (
    CashOnDeliveryAdapter,
    FlutterwaveClient,
    FlutterwaveConfig,
    FlutterwaveWebhookAdapter,
    ManualMomoAdapter,
    PayPalCaptureAdapter,
    PayPalClient,
    PayPalConfig,
    PesapalClient,
    PesapalConfig,
    PesapalStatusAdapter,
)
from order_payments.config import Settings
from order_payments.core import (
    IdempotencyGuard,
    OrderLedger,
    ReconciliationEngine,
    SettlementPipeline,
    SideEffectDispatcher,
)
from order_payments.core.polling import StatusPoller
from order_payments.database.connection import get_session_factory
from order_payments.monitoring.health import HealthCheck
from order_payments.notifications import (
    EmailConfig,
    EmailSender,
    InventoryClient,
    SMSClient,
    SMSConfig,
    build_handlers,
)

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the API and workers need, built once per process."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    ledger: OrderLedger
    guard: IdempotencyGuard
    dispatcher: SideEffectDispatcher
    engine: ReconciliationEngine
    pipeline: SettlementPipeline
    flutterwave_client: FlutterwaveClient
    flutterwave: FlutterwaveWebhookAdapter
    pesapal_client: PesapalClient
    pesapal: PesapalStatusAdapter
    poller: StatusPoller
    paypal_client: PayPalClient
    paypal: PayPalCaptureAdapter
    manual_momo: ManualMomoAdapter
    cash: CashOnDeliveryAdapter
    sms_client: SMSClient
    email_sender: EmailSender
    inventory_client: InventoryClient
    health: HealthCheck
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    dispatch_immediately: bool = True,
) -> Services:
    """
    Wire the object graph from settings.

    Args:
        settings: Application settings
        session_factory: Session factory (the global one if omitted)
        http_client: Shared outbound HTTP client (created if omitted)
        dispatch_immediately: Run side effects right after commit
    """
    session_factory = session_factory or get_session_factory()
    http_client = http_client or httpx.AsyncClient(timeout=settings.poll_timeout_seconds)
    currency = settings.settlement_currency

    flutterwave_client = FlutterwaveClient(
        FlutterwaveConfig(
            secret_key=settings.flutterwave_secret_key,
            webhook_secret=settings.flutterwave_webhook_secret,
            base_url=settings.flutterwave_base_url,
            timeout_seconds=settings.poll_timeout_seconds,
        ),
        http_client=http_client,
    )
    pesapal_client = PesapalClient(
        PesapalConfig(
            consumer_key=settings.pesapal_consumer_key,
            consumer_secret=settings.pesapal_consumer_secret,
            env=settings.pesapal_env,
            ipn_url=settings.pesapal_ipn_url,
            callback_url=settings.pesapal_callback_url,
            ipn_id=settings.pesapal_ipn_id,
            timeout_seconds=settings.poll_timeout_seconds,
        ),
        http_client=http_client,
    )
    paypal_client = PayPalClient(
        PayPalConfig(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            env=settings.paypal_env,
            return_url=f"{settings.frontend_url}/payment/paypal/return",
            cancel_url=f"{settings.frontend_url}/payment/paypal/cancel",
            brand_name=settings.app_name,
            timeout_seconds=settings.poll_timeout_seconds,
            currency=settings.paypal_currency,
            exchange_rate=settings.paypal_exchange_rate,
        ),
        http_client=http_client,
    )

    sms_client = SMSClient(
        SMSConfig(
            username=settings.at_username,
            api_key=settings.at_api_key,
            sender_id=settings.at_sender_id,
            region=settings.sms_region,
        ),
        http_client=http_client,
    )
    email_sender = EmailSender(
        EmailConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.smtp_timeout_seconds,
            sender=settings.email_from,
            frontend_url=settings.frontend_url,
        )
    )
    inventory_client = InventoryClient(settings.inventory_service_url, http_client=http_client)

    ledger = OrderLedger()
    dispatcher = SideEffectDispatcher(
        session_factory,
        handlers=build_handlers(sms_client, email_sender, inventory_client),
        max_attempts=settings.dispatch_max_attempts,
        base_delay_seconds=settings.dispatch_base_delay_seconds,
        claim_timeout_seconds=settings.dispatch_claim_timeout_seconds,
        batch_size=settings.dispatch_batch_size,
    )
    engine = ReconciliationEngine(
        ledger=ledger, dispatcher=dispatcher, cod_tolerance=settings.cod_amount_tolerance
    )
    guard = IdempotencyGuard(retention_hours=settings.dedup_retention_hours)
    pipeline = SettlementPipeline(
        session_factory, guard, engine, dispatcher, dispatch_immediately=dispatch_immediately
    )
    pesapal = PesapalStatusAdapter(pesapal_client, default_currency=currency)

    return Services(
        settings=settings,
        session_factory=session_factory,
        ledger=ledger,
        guard=guard,
        dispatcher=dispatcher,
        engine=engine,
        pipeline=pipeline,
        flutterwave_client=flutterwave_client,
        flutterwave=FlutterwaveWebhookAdapter(settings.flutterwave_webhook_secret),
        pesapal_client=pesapal_client,
        pesapal=pesapal,
        poller=StatusPoller(
            session_factory,
            pesapal,
            pipeline,
            ledger=ledger,
            batch_size=settings.poll_batch_size,
            poll_interval_seconds=settings.poll_interval_seconds,
        ),
        paypal_client=paypal_client,
        paypal=PayPalCaptureAdapter(paypal_client),
        manual_momo=ManualMomoAdapter(default_currency=currency),
        cash=CashOnDeliveryAdapter(default_currency=currency),
        sms_client=sms_client,
        email_sender=email_sender,
        inventory_client=inventory_client,
        health=HealthCheck(
            session_factory,
            channels={
                "flutterwave": flutterwave_client.configured,
                "pesapal": pesapal_client.configured,
                "paypal": paypal_client.configured,
                "sms": settings.sms_configured,
            },
        ),
        http_client=http_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, Any]:
    """
    Request-scoped session, committed on success.

    Yields:
        AsyncSession: Database session
    """
    async with services.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def require_admin(request: Request, services: Services = Depends(get_services)) -> str:
    """
    Check the shared admin key.

    Returns:
        str: Actor name from ``X-Admin-Actor`` (``admin`` if absent)
    """
    expected = services.settings.admin_api_key
    provided = request.headers.get(services.settings.admin_key_header)
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        logger.warning("admin_auth_failed", path=request.url.path, has_key=bool(provided))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
    return request.headers.get("X-Admin-Actor", "admin")
