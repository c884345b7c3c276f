from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer

MAX_REWARD_VALUE = 2**128


class RewardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REDEEMING = "REDEEMING"
    REDEEMED = "REDEEMED"


class User(BaseModel):
    id: str = Field(..., min_length=1)
    sealed_key: SecretStr
    created_at: datetime

    @field_serializer("sealed_key", when_used="json")
    def dump_sealed_key(self, value: SecretStr) -> str:
        return value.get_secret_value()


class Reward(BaseModel):
    id: str
    owner_id: str
    ledger_token_id: str
    value: int = Field(..., ge=0, lt=MAX_REWARD_VALUE)
    url: str
    status: RewardStatus = RewardStatus.ACTIVE
    created_at: datetime
    redeemed_at: Optional[datetime] = None
    ledger_confirmation: Optional[str] = None

    @property
    def redeemed(self) -> bool:
        return self.status == RewardStatus.REDEEMED

    def get_value(self) -> int:
        return self.value

    def get_url(self) -> str:
        return self.url

    def can_redeem(self) -> bool:
        return self.status == RewardStatus.ACTIVE


class RegisterRequest(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=128)

    model_config = ConfigDict(json_schema_extra={
        "example": {"id": "550e8400-e29b-41d4-a716-446655440000"}
    })


class RegisterResult(BaseModel):
    success: bool
    id: str


class MintRewardRequest(BaseModel):
    value: int = Field(..., ge=0, lt=MAX_REWARD_VALUE, description="Reward value in points")

    model_config = ConfigDict(json_schema_extra={"example": {"value": 1337}})


class MintRewardResult(BaseModel):
    id: str
    url: str


class RedeemResult(BaseModel):
    id: str
    reward: str


class BalanceResult(BaseModel):
    balance: str


class StatusResult(BaseModel):
    version: str


class RewardView(BaseModel):
    id: str
    owner_id: str
    value: str
    url: str
    status: RewardStatus
    redeemed: bool
    created_at: datetime
    redeemed_at: Optional[datetime] = None

    @classmethod
    def from_reward(cls, reward: Reward) -> "RewardView":
        return cls(
            id=reward.id,
            owner_id=reward.owner_id,
            value=str(reward.value),
            url=reward.url,
            status=reward.status,
            redeemed=reward.redeemed,
            created_at=reward.created_at,
            redeemed_at=reward.redeemed_at,
        )


class ErrorDetails(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetails
