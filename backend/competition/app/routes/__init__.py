"""Router modules exposed by the competition API."""
from . import accounts, admin, leaderboard, refresh, tradelocker

__all__ = [
    "accounts",
    "admin",
    "leaderboard",
    "refresh",
    "tradelocker",
]
