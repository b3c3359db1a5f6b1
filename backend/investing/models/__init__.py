from .user import User
from .asset import Asset, Currency
from .historical_price import HistoricalPrice
from .scheduler_log import SchedulerLog
from .transaction import Transaction
from .simulation import Simulation

__all__ = [
    "User",
    "Asset",
    "Currency",
    "HistoricalPrice",
    "SchedulerLog",
    "Transaction",
    "Simulation",
]
