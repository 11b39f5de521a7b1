"""Database package for the settlement engine."""
from .connection import (
    close_db,
    create_engine_from_settings,
    get_engine,
    get_session_factory,
    init_db,
    make_session_factory,
)
from .models import (
    Base,
    Order,
    RestaurantPayoutAccount,
    SettlementEvent,
    SettlementStatus,
    WeeklySettlement,
    WeeklySettlementOrder,
)

__all__ = [
    "Base",
    "Order",
    "RestaurantPayoutAccount",
    "SettlementEvent",
    "SettlementStatus",
    "WeeklySettlement",
    "WeeklySettlementOrder",
    "close_db",
    "create_engine_from_settings",
    "get_engine",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
