import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import uuid4

import structlog
from pydantic import SecretStr

from .chain import KeyVault, derive_address, generate_secret_key
from .config import Settings
from .errors import (
    AlreadyRedeemedError,
    InvalidKeyError,
    LedgerError,
    MintRewardError,
    RedemptionPendingError,
    RepositoryError,
    RewardAlreadyExistsError,
    RewardNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
    ValidationError,
)
from .ledger import (
    HttpLedgerGateway,
    InMemoryLedgerGateway,
    LedgerGateway,
    LedgerGatewayError,
    LedgerOutcomeUnknownError,
)
from .models import (
    BalanceResult,
    MintRewardRequest,
    MintRewardResult,
    RedeemResult,
    RegisterRequest,
    RegisterResult,
    Reward,
    RewardStatus,
    User,
)
from .repository import (
    ConditionFailedError,
    InMemoryRepository,
    RecordExistsError,
    Repository,
    StoreError,
)
from .storage import SqliteStore

logger = structlog.get_logger()

DEFAULT_METADATA_BASE_URL = "https://localhost:3001/api/v1/reward"


class KeyedLock:
    """One mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_id(value: str, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid {what} id")
    return value


class RewardService:
    def __init__(
        self,
        users: Optional[Repository[User]] = None,
        rewards: Optional[Repository[Reward]] = None,
        gateway: Optional[LedgerGateway] = None,
        vault: Optional[KeyVault] = None,
        metadata_base_url: str = DEFAULT_METADATA_BASE_URL,
    ):
        self.users = users or InMemoryRepository(User)
        self.rewards = rewards or InMemoryRepository(Reward)
        self.gateway = gateway or InMemoryLedgerGateway()
        self.vault = vault or KeyVault()
        self.metadata_base_url = metadata_base_url.rstrip("/")
        self._reward_locks = KeyedLock()

    def register_user(self, request: RegisterRequest) -> RegisterResult:
        user_id = str(uuid4()) if request.id is None else _require_id(request.id, "user")
        with generate_secret_key() as key:
            sealed = self.vault.seal(key)
        user = User(id=user_id, sealed_key=SecretStr(sealed), created_at=_now())

        try:
            self.users.create(user_id, user)
        except RecordExistsError as e:
            raise UserAlreadyExistsError(f"User {user_id} already exists") from e
        except StoreError as e:
            logger.error("user_save_failed", user_id=user_id, error=type(e).__name__)
            raise RepositoryError("Failed to save user") from e

        logger.info("user_registered", user_id=user_id)
        return RegisterResult(success=True, id=user_id)

    def get_user(self, user_id: str) -> User:
        _require_id(user_id, "user")
        try:
            user = self.users.read(user_id)
        except StoreError as e:
            logger.error("user_read_failed", user_id=user_id, error=type(e).__name__)
            raise RepositoryError("Failed to read user") from e
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def get_address(self, user: User) -> str:
        with self.vault.unseal(user.sealed_key.get_secret_value()) as key:
            return derive_address(key)

    def get_balance(self, user_id: str) -> BalanceResult:
        address = self.get_address(self.get_user(user_id))
        try:
            balance = self.gateway.balance_of(address)
        except LedgerGatewayError as e:
            logger.error("balance_lookup_failed", user_id=user_id, error=str(e))
            raise LedgerError("Failed to fetch balance") from e
        return BalanceResult(balance=str(balance))

    def mint_reward(self, user_id: str, request: MintRewardRequest) -> MintRewardResult:
        owner = self.get_user(user_id)
        address = self.get_address(owner)

        reward_id = str(uuid4())
        url = f"{self.metadata_base_url}/{reward_id}"

        try:
            ledger_token_id = self.gateway.mint(address, request.value, metadata_url=url)
        except LedgerGatewayError as e:
            logger.error("reward_mint_failed", user_id=user_id, reward_id=reward_id, error=str(e))
            raise MintRewardError("Failed to mint reward") from e

        reward = Reward(
            id=reward_id,
            owner_id=owner.id,
            ledger_token_id=ledger_token_id,
            value=request.value,
            url=url,
            created_at=_now(),
        )
        try:
            self.rewards.create(reward_id, reward)
        except RecordExistsError as e:
            raise RewardAlreadyExistsError(f"Reward {reward_id} already exists") from e
        except StoreError as e:
            logger.error(
                "reward_save_failed",
                reward_id=reward_id,
                ledger_token_id=ledger_token_id,
                error=type(e).__name__,
            )
            raise RepositoryError("Failed to save reward") from e

        logger.info(
            "reward_minted",
            user_id=user_id,
            reward_id=reward_id,
            ledger_token_id=ledger_token_id,
            value=request.value,
        )
        return MintRewardResult(id=reward_id, url=url)

    def get_reward(self, reward_id: str) -> Reward:
        _require_id(reward_id, "reward")
        try:
            reward = self.rewards.read(reward_id)
        except StoreError as e:
            logger.error("reward_read_failed", reward_id=reward_id, error=type(e).__name__)
            raise RepositoryError("Failed to read reward") from e
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return reward

    def redeem_reward(self, reward_id: str) -> RedeemResult:
        with self._reward_locks.hold(reward_id):
            reward = self.get_reward(reward_id)
            if not reward.can_redeem():
                if reward.redeemed:
                    raise AlreadyRedeemedError(f"Reward {reward_id} already redeemed")
                raise RedemptionPendingError(f"Reward {reward_id} has a pending redemption")

            address = self.get_address(self.get_user(reward.owner_id))

            # Durable intent marker: a crash after the ledger call leaves the
            # reward REDEEMING, never ACTIVE.
            pending = self._transition(reward, status=RewardStatus.REDEEMING)

            try:
                confirmation = self.gateway.redeem(address, reward.ledger_token_id)
            except LedgerOutcomeUnknownError as e:
                # The burn may have happened; only recover_redemption may settle it
                logger.error("reward_redeem_outcome_unknown", reward_id=reward_id, error=str(e))
                raise RedemptionPendingError(f"Reward {reward_id} has a pending redemption") from e
            except LedgerGatewayError as e:
                logger.error("reward_redeem_failed", reward_id=reward_id, error=str(e))
                self._rollback(pending)
                raise MintRewardError("Failed to redeem reward") from e

            self._transition(
                pending,
                status=RewardStatus.REDEEMED,
                redeemed_at=_now(),
                ledger_confirmation=confirmation,
            )

        logger.info("reward_redeemed", reward_id=reward_id, user_id=reward.owner_id, value=reward.value)
        return RedeemResult(id=reward_id, reward=str(reward.get_value()))

    def recover_redemption(self, reward_id: str) -> Reward:
        with self._reward_locks.hold(reward_id):
            reward = self.get_reward(reward_id)
            if reward.status != RewardStatus.REDEEMING:
                return reward

            try:
                burned = self.gateway.is_redeemed(reward.ledger_token_id)
            except LedgerGatewayError as e:
                logger.error("redemption_recovery_failed", reward_id=reward_id, error=str(e))
                raise LedgerError("Failed to check token state") from e

            if burned:
                recovered = self._transition(reward, status=RewardStatus.REDEEMED, redeemed_at=_now())
            else:
                recovered = self._transition(reward, status=RewardStatus.ACTIVE)

        logger.info("redemption_recovered", reward_id=reward_id, status=recovered.status.value)
        return recovered

    def pending_redemptions(self) -> list[str]:
        pending = []
        try:
            for key in self.rewards.keys():
                reward = self.rewards.read(key)
                if reward is not None and reward.status == RewardStatus.REDEEMING:
                    pending.append(key)
        except StoreError as e:
            raise RepositoryError("Failed to list rewards") from e
        return pending

    def _transition(self, reward: Reward, **changes) -> Reward:
        updated = reward.model_copy(update=changes)
        try:
            self.rewards.update(reward.id, updated, expected=reward)
        except ConditionFailedError as e:
            raise RedemptionPendingError(f"Reward {reward.id} was modified concurrently") from e
        except StoreError as e:
            logger.error(
                "reward_update_failed",
                reward_id=reward.id,
                target=updated.status.value,
                error=type(e).__name__,
            )
            raise RepositoryError("Failed to update reward") from e
        return updated

    def _rollback(self, pending: Reward) -> None:
        try:
            self._transition(pending, status=RewardStatus.ACTIVE)
        except (RepositoryError, RedemptionPendingError):
            # Left REDEEMING; recover_redemption settles it against the ledger
            logger.error("reward_rollback_failed", reward_id=pending.id)


def build_service(settings: Settings) -> tuple[RewardService, SqliteStore]:
    if not settings.key_encryption_key and settings.database_path != ":memory:":
        raise InvalidKeyError("KEY_ENCRYPTION_KEY is required with a persistent database")
    vault = KeyVault(settings.key_encryption_key or None)
    if vault.ephemeral:
        logger.warning("ephemeral_key_encryption_key", detail="sealed custody keys will not survive a restart")
    store = SqliteStore(settings.database_path)

    if settings.ledger_url:
        gateway = HttpLedgerGateway(settings.ledger_url, timeout=settings.ledger_timeout_seconds)
    else:
        logger.warning("simulated_ledger_in_use")
        gateway = InMemoryLedgerGateway()

    service = RewardService(
        users=store.repository("users", User),
        rewards=store.repository("rewards", Reward),
        gateway=gateway,
        vault=vault,
        metadata_base_url=settings.reward_metadata_base_url,
    )
    return service, store
