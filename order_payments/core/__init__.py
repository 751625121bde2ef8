"""Order payment reconciliation core."""
from .dispatch import SIDE_EFFECT_PLAN, DispatchState, SideEffectAction, SideEffectDispatcher
from .domain import (
    AdmissionResult,
    OrderAction,
    OrderStatus,
    PaymentEvent,
    PaymentMethod,
    PaymentOutcome,
    RejectionReason,
    SourceChannel,
    TransitionResult,
)
from .idempotency import IdempotencyGuard
from .ledger import (
    DuplicateOrderError,
    LedgerError,
    OrderLedger,
    OrderNotFoundError,
    ReferenceInUseError,
)
from .pipeline import SettlementPipeline
from .reconciliation import ReconciliationEngine, ReconciliationError

__all__ = [
    "SIDE_EFFECT_PLAN",
    "AdmissionResult",
    "DispatchState",
    "DuplicateOrderError",
    "IdempotencyGuard",
    "LedgerError",
    "OrderAction",
    "OrderLedger",
    "OrderNotFoundError",
    "OrderStatus",
    "PaymentEvent",
    "PaymentMethod",
    "PaymentOutcome",
    "ReconciliationEngine",
    "ReconciliationError",
    "ReferenceInUseError",
    "RejectionReason",
    "SettlementPipeline",
    "SideEffectAction",
    "SideEffectDispatcher",
    "SourceChannel",
    "TransitionResult",
]
