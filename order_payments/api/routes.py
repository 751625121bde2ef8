"""
API routes for order payments.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.channels.base import GatewayUnavailableError
from order_payments.channels.flutterwave import SIGNATURE_HEADER, detect_provider, make_tx_ref
from order_payments.core.domain import (
    OrderAction,
    OrderStatus,
    PaymentMethod,
    RejectionReason,
    TransitionResult,
    utcnow,
)
from order_payments.core.ledger import DuplicateOrderError
from order_payments.database.models import Order, PaymentRejection, SideEffectDispatch
from order_payments.monitoring.metrics import metrics
from order_payments.notifications.base import order_number

from .dependencies import Services, get_db, get_services, require_admin
from .schemas import (
    CashConfirmationRequest,
    CreateOrderRequest,
    DispatchResponse,
    HealthCheckResponse,
    ManualMomoSubmission,
    ManualPaymentRequest,
    MobileMoneyRequest,
    OrderActionRequest,
    OrderHistoryResponse,
    OrderResponse,
    PaymentInitiationResponse,
    PayPalCaptureRequest,
    PesapalStatusResponse,
    RejectionResponse,
    ResolveRejectionRequest,
    SweepResponse,
    TransitionResultResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

MOBILE_MONEY_METHODS = (PaymentMethod.MTN_MOMO.value, PaymentMethod.AIRTEL_MONEY.value)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "status": order.status,
        "total": order.total,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "external_reference": order.external_reference,
        "charge_amount": order.charge_amount,
        "charge_currency": order.charge_currency,
        "payer_phone": order.payer_phone,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "customer_email": order.customer_email,
        "cancellation_reason": order.cancellation_reason,
        "version": order.version,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


def rejection_to_dict(rejection: PaymentRejection) -> Dict[str, Any]:
    return {
        "id": rejection.id,
        "order_id": rejection.order_id,
        "event_id": rejection.event_id,
        "dedup_key": rejection.dedup_key,
        "source_channel": rejection.source_channel,
        "reason": rejection.reason,
        "expected_amount": rejection.expected_amount,
        "reported_amount": rejection.reported_amount,
        "reported_currency": rejection.reported_currency,
        "details": rejection.details or {},
        "resolved": rejection.resolved,
        "resolution_note": rejection.resolution_note,
        "created_at": rejection.created_at.isoformat(),
    }


def dispatch_to_dict(record: SideEffectDispatch) -> Dict[str, Any]:
    return {
        "id": record.id,
        "order_id": record.order_id,
        "status": record.status,
        "action": record.action,
        "state": record.state,
        "attempts": record.attempts,
        "last_error": record.last_error,
        "next_attempt_at": record.next_attempt_at.isoformat() if record.next_attempt_at else None,
    }


async def load_pending_order(services: Services, order_id: str) -> Order:
    """Fetch an order that can still be paid, in a short-lived session."""
    async with services.session_factory() as db:
        order = await services.ledger.require_order(db, order_id)
    if order.status != OrderStatus.PENDING.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order is {order.status}, payment can no longer be initiated",
        )
    return order


def require_configured(configured: bool, gateway: str) -> None:
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{gateway} is not configured",
        )


async def engage_or_conflict(
    services: Services,
    order_id: str,
    method: PaymentMethod,
    reference: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    if not await services.pipeline.engage(order_id, method, reference, details=details):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order is already bound to another payment",
        )


# Orders


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Checkout: create a pending order awaiting payment",
)
async def create_order(
    request: CreateOrderRequest,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create a pending order."""
    try:
        order = await services.ledger.create_order(
            db,
            total=request.total,
            currency=request.currency,
            payment_method=request.payment_method,
            order_id=request.order_id,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
            notes=request.notes,
        )
    except DuplicateOrderError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return order_to_dict(order)


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: str,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await services.ledger.require_order(db, order_id)
    return order_to_dict(order)


@order_router.get(
    "/{order_id}/history",
    response_model=OrderHistoryResponse,
    summary="Order transition history",
)
async def get_order_history(
    order_id: str,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await services.ledger.require_order(db, order_id)
    history = await services.ledger.get_history(db, order_id)
    return {
        "order_id": order.id,
        "status": order.status,
        "transitions": [
            {
                "from_status": t.from_status,
                "to_status": t.to_status,
                "event_id": t.event_id,
                "trigger": t.trigger,
                "evidence": t.evidence or {},
                "applied_at": t.applied_at.isoformat(),
            }
            for t in history
        ],
    }


# Webhooks


@webhook_router.post(
    "/flutterwave",
    response_model=WebhookResponse,
    summary="Flutterwave webhook endpoint",
    description="Receive mobile money charge results",
)
async def flutterwave_webhook(
    request: Request,
    verif_hash: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Flutterwave webhook deliveries.

    Processed and duplicate deliveries both return 200 so Flutterwave stops
    redelivering.
    """
    body = await request.body()
    event = services.flutterwave.parse(body, verif_hash)
    if event is None:
        return {"status": "ignored"}

    result = await services.pipeline.submit(event)
    return {
        "status": "duplicate" if result.duplicate else "processed",
        "result": result.as_dict(),
    }


@webhook_router.get("/pesapal/ipn", summary="Pesapal IPN endpoint")
async def pesapal_ipn(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle the Pesapal IPN nudge.

    The notification only says "something changed"; the order is polled for
    the authoritative status and the acknowledgement echoes the result.
    """
    notification = services.pesapal.parse_ipn(request.query_params)
    logger.info(
        "pesapal_ipn_received",
        order_id=notification.order_merchant_reference,
        order_tracking_id=notification.order_tracking_id,
        notification_type=notification.order_notification_type,
    )
    try:
        result = await services.poller.poll_order(
            notification.order_merchant_reference,
            tracking_id=notification.order_tracking_id,
        )
    except GatewayUnavailableError as e:
        # Non-200 acknowledgement makes Pesapal resend the notification
        logger.warning("pesapal_ipn_poll_unavailable", error=str(e))
        return services.pesapal.acknowledge(notification, None, status=500)

    return services.pesapal.acknowledge(notification, result)


# Payments


@payment_router.post(
    "/{order_id}/mobile-money",
    response_model=PaymentInitiationResponse,
    summary="Start a mobile money payment",
    description="Initiate a Flutterwave MTN/Airtel charge for a pending order",
)
async def initiate_mobile_money(
    order_id: str,
    request: MobileMoneyRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    require_configured(services.flutterwave_client.configured, "Flutterwave")
    order = await load_pending_order(services, order_id)
    network = request.network or detect_provider(request.phone_number)

    if order.external_reference and order.payment_method in MOBILE_MONEY_METHODS:
        tx_ref = order.external_reference
    elif order.external_reference:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order is already bound to another payment",
        )
    else:
        tx_ref = make_tx_ref(order.id)

    await engage_or_conflict(services, order.id, network, tx_ref)

    envelope = await services.flutterwave_client.charge_mobile_money(
        tx_ref=tx_ref,
        amount=order.total,
        currency=order.currency,
        phone_number=request.phone_number,
        network=network,
        email=request.email or order.customer_email,
        fullname=request.fullname or order.customer_name,
        redirect_url=f"{services.settings.frontend_url}/orders/{order.id}",
    )
    meta = envelope.meta if isinstance(envelope.meta, dict) else {}
    authorization = meta.get("authorization") or {}

    logger.info("mobile_money_initiated", order_id=order.id, tx_ref=tx_ref, network=network.value)
    return {
        "order_id": order.id,
        "payment_method": network.value,
        "external_reference": tx_ref,
        "redirect_url": authorization.get("redirect"),
        "message": envelope.message or "Approve the payment prompt on your phone",
    }


@payment_router.post(
    "/{order_id}/pesapal",
    response_model=PaymentInitiationResponse,
    summary="Start a Pesapal payment",
)
async def initiate_pesapal(
    order_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    require_configured(services.pesapal_client.configured, "Pesapal")
    order = await load_pending_order(services, order_id)
    if order.external_reference:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Payment already initiated for this order",
        )

    names = (order.customer_name or "").split(" ", 1)
    submitted = await services.pesapal_client.submit_order(
        order_id=order.id,
        amount=order.total,
        currency=order.currency,
        description=f"Order {order_number(order.id)}",
        email=order.customer_email,
        phone_number=order.customer_phone,
        first_name=names[0] or None,
        last_name=names[1] if len(names) > 1 else None,
    )
    await engage_or_conflict(services, order.id, PaymentMethod.PESAPAL, submitted.order_tracking_id)
    await services.poller.track(order.id, submitted.order_tracking_id)

    return {
        "order_id": order.id,
        "payment_method": PaymentMethod.PESAPAL.value,
        "external_reference": submitted.order_tracking_id,
        "redirect_url": submitted.redirect_url,
    }


@payment_router.get(
    "/{order_id}/status",
    response_model=PesapalStatusResponse,
    summary="Check payment status",
    description="Poll the payment channel now and return the order status",
)
async def payment_status(
    order_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    poll_result = await services.poller.poll_order(order_id)

    async with services.session_factory() as db:
        order = await services.ledger.require_order(db, order_id)

    return {
        "status": order.status,
        "pesapal_status": poll_result.gateway_status if poll_result else None,
    }


@payment_router.post(
    "/{order_id}/paypal",
    response_model=PaymentInitiationResponse,
    summary="Start a PayPal checkout",
)
async def initiate_paypal(
    order_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    require_configured(services.paypal_client.configured, "PayPal")
    order = await load_pending_order(services, order_id)

    if order.external_reference and order.payment_method == PaymentMethod.PAYPAL.value:
        paypal_order = await services.paypal_client.get_order(order.external_reference)
        charge_amount, charge_currency = order.charge_amount, order.charge_currency
    elif order.external_reference:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order is already bound to another payment",
        )
    else:
        charge_amount, charge_currency = services.paypal_client.config.charge_for(
            order.total, order.currency
        )
        paypal_order = await services.paypal_client.create_order(
            order.id, charge_amount, charge_currency, description=f"Order {order_number(order.id)}"
        )
        await engage_or_conflict(
            services,
            order.id,
            PaymentMethod.PAYPAL,
            paypal_order.id,
            details={"charge_amount": charge_amount, "charge_currency": charge_currency},
        )

    return {
        "order_id": order.id,
        "payment_method": PaymentMethod.PAYPAL.value,
        "external_reference": paypal_order.id,
        "redirect_url": paypal_order.approve_url,
        "charge_amount": charge_amount,
        "charge_currency": charge_currency,
    }


@payment_router.post(
    "/{order_id}/paypal/capture",
    response_model=TransitionResultResponse,
    summary="Capture an approved PayPal order",
)
async def capture_paypal(
    order_id: str,
    request: PayPalCaptureRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    require_configured(services.paypal_client.configured, "PayPal")
    event = await services.paypal.capture(request.paypal_order_id, order_id)
    result = await services.pipeline.submit(event)
    return result.as_dict()


@payment_router.post(
    "/{order_id}/manual-momo",
    response_model=OrderResponse,
    summary="Submit a direct mobile money transfer",
    description="Record the customer's MoMo transaction id for admin verification",
)
async def submit_manual_momo(
    order_id: str,
    request: ManualMomoSubmission,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    order = await load_pending_order(services, order_id)
    await engage_or_conflict(
        services,
        order.id,
        PaymentMethod.MANUAL_MOMO,
        request.transaction_id,
        details={"payer_phone": request.phone_number},
    )
    logger.info(
        "manual_momo_submitted",
        order_id=order.id,
        transaction_id=request.transaction_id,
        phone=request.phone_number,
    )

    async with services.session_factory() as db:
        order = await services.ledger.require_order(db, order_id)
    return order_to_dict(order)


# Admin


@admin_router.post(
    "/orders/{order_id}/manual-payment",
    response_model=TransitionResultResponse,
    summary="Confirm a manual mobile money payment",
)
async def confirm_manual_payment(
    order_id: str,
    request: ManualPaymentRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    form = request.model_dump()
    form.update(order_ref=order_id, verified_by=actor)
    event = services.manual_momo.parse(form)
    result = await services.pipeline.submit(event)
    return result.as_dict()


@admin_router.get(
    "/payments/manual-momo/pending",
    response_model=List[OrderResponse],
    summary="Manual MoMo transfers awaiting verification",
)
async def list_pending_manual_momo(
    limit: int = Query(default=100, ge=1, le=500),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    orders = await services.ledger.pending_manual_transfers(db, limit=limit)
    return [order_to_dict(o) for o in orders]


@admin_router.post(
    "/orders/{order_id}/cash-confirmation",
    response_model=TransitionResultResponse,
    summary="Confirm cash collected on delivery",
)
async def confirm_cash(
    order_id: str,
    request: CashConfirmationRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    form = request.model_dump()
    form.update(order_ref=order_id, confirmed_by=actor)
    event = services.cash.parse(form)
    result = await services.pipeline.submit(event)
    return result.as_dict()


async def run_order_action(
    services: Services,
    order_id: str,
    action: OrderAction,
    actor: str,
    request: Optional[OrderActionRequest],
) -> Dict[str, Any]:
    result: TransitionResult = await services.pipeline.run_action(
        order_id, action, actor=actor, reason=request.reason if request else None
    )
    if result.rejection_reason == RejectionReason.INVALID_TRANSITION:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.as_dict())
    return result.as_dict()


@admin_router.post(
    "/orders/{order_id}/ship", response_model=TransitionResultResponse, summary="Mark shipped"
)
async def ship_order(
    order_id: str,
    request: Optional[OrderActionRequest] = None,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await run_order_action(services, order_id, OrderAction.SHIP, actor, request)


@admin_router.post(
    "/orders/{order_id}/deliver", response_model=TransitionResultResponse, summary="Mark delivered"
)
async def deliver_order(
    order_id: str,
    request: Optional[OrderActionRequest] = None,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await run_order_action(services, order_id, OrderAction.DELIVER, actor, request)


@admin_router.post(
    "/orders/{order_id}/cancel", response_model=TransitionResultResponse, summary="Cancel order"
)
async def cancel_order(
    order_id: str,
    request: Optional[OrderActionRequest] = None,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await run_order_action(services, order_id, OrderAction.CANCEL, actor, request)


@admin_router.get(
    "/rejections",
    response_model=List[RejectionResponse],
    summary="Payment rejection backlog",
    description="Admitted events the engine refused, filterable by reason",
)
async def list_rejections(
    reason: Optional[RejectionReason] = Query(default=None),
    resolved: Optional[bool] = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    rejections = await services.ledger.list_rejections(
        db, reason=reason, resolved=resolved, limit=limit
    )
    return [rejection_to_dict(r) for r in rejections]


@admin_router.post(
    "/rejections/{rejection_id}/resolve",
    response_model=RejectionResponse,
    summary="Resolve a rejection",
)
async def resolve_rejection(
    rejection_id: int,
    request: ResolveRejectionRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    rejection = await services.ledger.resolve_rejection(
        db, rejection_id, f"{actor}: {request.note}"
    )
    if rejection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rejection not found")
    return rejection_to_dict(rejection)


@admin_router.get(
    "/dispatches/failed",
    response_model=List[DispatchResponse],
    summary="Failed and abandoned side effects",
)
async def list_failed_dispatches(
    limit: int = Query(default=100, ge=1, le=500),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    records = await services.dispatcher.list_failed(db, limit=limit)
    return [dispatch_to_dict(r) for r in records]


@admin_router.post(
    "/dispatches/sweep",
    response_model=SweepResponse,
    summary="Run the side-effect sweep now",
)
async def sweep_dispatches(services: Services = Depends(get_services)) -> Dict[str, Any]:
    since = utcnow() - timedelta(hours=services.settings.dispatch_recovery_window_hours)
    recovered = await services.dispatcher.recover(since)
    processed = await services.dispatcher.dispatch_pending()
    backlog = await services.dispatcher.get_backlog_count()
    metrics.set_dispatch_backlog(backlog)
    return {"recovered": recovered, "processed": processed, "backlog": backlog}


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness endpoint."""
    try:
        result = await services.health.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
