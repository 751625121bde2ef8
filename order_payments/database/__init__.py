"""Database package for order payments."""
from .connection import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
    make_engine,
    make_session_factory,
)
from .models import (
    Base,
    ChannelPollState,
    DedupRecord,
    Order,
    OrderTransition,
    PaymentEvidence,
    PaymentRejection,
    SideEffectDispatch,
)

__all__ = [
    "Base",
    "ChannelPollState",
    "DedupRecord",
    "Order",
    "OrderTransition",
    "PaymentEvidence",
    "PaymentRejection",
    "SideEffectDispatch",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "make_engine",
    "make_session_factory",
]
