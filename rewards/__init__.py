"""
Reward Issuance Backend

This package provides:
- Users with sealed custody keys and ledger-facing addresses
- Reward tokens minted through a ledger gateway
- Reward lifecycle: active → redeeming → redeemed, exactly once
- Generic keyed repositories over SQLite or memory
"""

from .errors import (
    AlreadyRedeemedError,
    MintRewardError,
    RewardNotFoundError,
    RewardServiceError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from .models import Reward, RewardStatus, User
from .service import RewardService

__all__ = [
    "AlreadyRedeemedError",
    "MintRewardError",
    "RewardNotFoundError",
    "RewardServiceError",
    "UserAlreadyExistsError",
    "UserNotFoundError",
    "Reward",
    "RewardStatus",
    "User",
    "RewardService",
]
