"""
Unit Tests for the Reward Service

Tests cover:
1. User registration (first write wins)
2. Minting rewards through the ledger gateway
3. Redemption flow and the one-payout guarantee
4. Concurrent redemption of the same reward
5. Ledger failures, crash recovery and storage errors
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from rewards.chain import KeyVault
from rewards.errors import (
    AlreadyRedeemedError,
    MintRewardError,
    RedemptionPendingError,
    RepositoryError,
    RewardNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
    ValidationError,
)
from rewards.ledger import HttpLedgerGateway, InMemoryLedgerGateway, LedgerGatewayError
from rewards.models import MintRewardRequest, RegisterRequest, Reward, RewardStatus, User
from rewards.repository import InMemoryRepository, ReadError, UpdateError
from rewards.service import DEFAULT_METADATA_BASE_URL, RewardService
from rewards.storage import SqliteStore

USER_ID = "U1"


class FlakyGateway(InMemoryLedgerGateway):
    def __init__(self):
        super().__init__()
        self.fail_mint = False
        self.fail_redeem = False
        self.redeem_calls = 0
        self.redeem_delay = 0.0

    def mint(self, to_address, value, metadata_url=None):
        if self.fail_mint:
            raise LedgerGatewayError("node unreachable")
        return super().mint(to_address, value, metadata_url)

    def redeem(self, owner_address, ledger_token_id):
        self.redeem_calls += 1
        if self.fail_redeem:
            raise LedgerGatewayError("contract call reverted")
        time.sleep(self.redeem_delay)
        return super().redeem(owner_address, ledger_token_id)


class GatedGateway(InMemoryLedgerGateway):
    """Blocks inside redeem until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def redeem(self, owner_address, ledger_token_id):
        self.entered.set()
        self.release.wait(5)
        return super().redeem(owner_address, ledger_token_id)


class LosesFinalWrite(InMemoryRepository):
    """Simulates a crash between the ledger burn and the REDEEMED write."""

    def update(self, key, value, expected=None):
        if value.status == RewardStatus.REDEEMED:
            raise UpdateError("disk full")
        super().update(key, value, expected)


class RemoteLedger:
    """HTTP ledger backed by the simulated one; redeem can drop its answer or refuse connections."""

    def __init__(self):
        self.ledger = InMemoryLedgerGateway()
        self.redeem_calls = 0
        self.redeem_failure = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/mint":
            body = json.loads(request.content)
            token_id = self.ledger.mint(body["to"], int(body["value"]), body["url"])
            return httpx.Response(200, json={"token_id": token_id})
        if path == "/redeem":
            self.redeem_calls += 1
            if self.redeem_failure == "refused":
                raise httpx.ConnectError("connection refused", request=request)
            body = json.loads(request.content)
            confirmation = self.ledger.redeem(body["owner"], body["token_id"])
            if self.redeem_failure == "timeout":
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(200, json={"confirmation": confirmation})
        if path.startswith("/tokens/"):
            return httpx.Response(200, json={"redeemed": self.ledger.is_redeemed(path.rsplit("/", 1)[1])})
        if path.startswith("/balance/"):
            return httpx.Response(200, json={"balance": str(self.ledger.balance_of(path.rsplit("/", 1)[1]))})
        return httpx.Response(404)

    def gateway(self) -> HttpLedgerGateway:
        client = httpx.Client(base_url="http://ledger.test", transport=httpx.MockTransport(self))
        return HttpLedgerGateway("http://ledger.test", client=client)


class BrokenReads(InMemoryRepository):
    def read(self, key):
        raise ReadError("io error")


def make_service(**kwargs) -> RewardService:
    service = RewardService(**kwargs)
    service.register_user(RegisterRequest(id=USER_ID))
    return service


class TestRegistration:
    """Tests for user registration."""

    def test_register_with_given_id(self):
        """Test registering a caller-chosen identity."""
        service = RewardService()

        result = service.register_user(RegisterRequest(id=USER_ID))

        assert result.success is True
        assert result.id == USER_ID
        assert service.get_user(USER_ID).id == USER_ID

    def test_register_generates_id(self):
        """Test that an identity is generated when none is given."""
        service = RewardService()

        result = service.register_user(RegisterRequest())

        assert len(result.id) == 36
        assert service.get_user(result.id).id == result.id

    def test_register_blank_id(self):
        """Test that a whitespace-only identity is rejected and nothing is stored."""
        service = RewardService()

        with pytest.raises(ValidationError):
            service.register_user(RegisterRequest(id="   "))

        assert service.users.keys() == []

    def test_register_twice_fails_and_keeps_first(self):
        """Test that a second registration neither succeeds nor overwrites."""
        service = make_service()
        stored = service.users.read(USER_ID)

        with pytest.raises(UserAlreadyExistsError) as exc_info:
            service.register_user(RegisterRequest(id=USER_ID))

        assert exc_info.value.kind == "AlreadyExists"
        assert service.users.read(USER_ID) == stored

    def test_custody_key_is_sealed(self):
        """Test that the stored user carries only a sealed key."""
        service = make_service()
        user = service.users.read(USER_ID)

        assert "**" in repr(user.sealed_key)
        assert service.get_address(user).startswith("0x")

    def test_unknown_user(self):
        """Test looking up a user that was never registered."""
        with pytest.raises(UserNotFoundError):
            RewardService().get_user("nobody")

    def test_blank_user_id_is_rejected(self):
        """Test that blank identities fail validation before any lookup."""
        with pytest.raises(ValidationError):
            RewardService().get_user("  ")


class TestMintReward:
    """Tests for minting rewards."""

    def test_mint_reward(self):
        """Test that a minted reward is persisted with its value and URL."""
        service = make_service()

        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1337))
        reward = service.get_reward(minted.id)

        assert reward.get_value() == 1337
        assert reward.owner_id == USER_ID
        assert reward.status == RewardStatus.ACTIVE
        assert reward.redeemed is False
        assert minted.url == f"{DEFAULT_METADATA_BASE_URL}/{minted.id}"
        assert reward.get_url() == minted.url

    def test_ledger_token_is_recorded(self):
        """Test that the ledger token id comes from the gateway."""
        gateway = InMemoryLedgerGateway()
        service = make_service(gateway=gateway)

        minted = service.mint_reward(USER_ID, MintRewardRequest(value=5))
        reward = service.get_reward(minted.id)

        token = gateway.tokens[reward.ledger_token_id]
        assert token.value == 5
        assert token.url == minted.url
        assert token.owner == service.get_address(service.get_user(USER_ID))

    def test_custom_metadata_base_url(self):
        """Test that the metadata URL is derived from the configured base."""
        service = make_service(metadata_base_url="https://rewards.example.com/meta/")

        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1))

        assert minted.url == f"https://rewards.example.com/meta/{minted.id}"

    def test_mint_for_unknown_owner(self):
        """Test that minting for a missing user fails before the ledger call."""
        gateway = InMemoryLedgerGateway()
        service = RewardService(gateway=gateway)

        with pytest.raises(UserNotFoundError):
            service.mint_reward("ghost", MintRewardRequest(value=10))

        assert gateway.tokens == {}

    def test_ledger_mint_failure(self):
        """Test that a gateway failure surfaces and nothing is persisted."""
        gateway = FlakyGateway()
        gateway.fail_mint = True
        service = make_service(gateway=gateway)

        with pytest.raises(MintRewardError) as exc_info:
            service.mint_reward(USER_ID, MintRewardRequest(value=10))

        assert isinstance(exc_info.value.__cause__, LedgerGatewayError)
        assert service.rewards.keys() == []

    @pytest.mark.parametrize("value", [-1, 2**128])
    def test_value_out_of_range(self, value):
        """Test that reward values must fit an unsigned 128-bit integer."""
        with pytest.raises(PydanticValidationError):
            MintRewardRequest(value=value)

    def test_mint_does_not_change_balance(self):
        """Test that minting alone leaves the owner's balance untouched."""
        service = make_service()

        service.mint_reward(USER_ID, MintRewardRequest(value=1337))

        assert service.get_balance(USER_ID).balance == "0"


class TestRedeemReward:
    """Tests for redeeming rewards."""

    def test_full_flow(self):
        """Test register, mint, redeem, and a rejected second redeem."""
        service = make_service()
        assert service.get_balance(USER_ID).balance == "0"

        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1337))
        assert service.get_balance(USER_ID).balance == "0"

        result = service.redeem_reward(minted.id)
        assert result.id == minted.id
        assert result.reward == "1337"
        assert service.get_balance(USER_ID).balance == "1337"

        with pytest.raises(AlreadyRedeemedError) as exc_info:
            service.redeem_reward(minted.id)
        assert exc_info.value.kind == "AlreadyRedeemed"

        # No second payout
        assert service.get_balance(USER_ID).balance == "1337"

    def test_redeemed_state_is_persisted(self):
        """Test that redemption is recorded on the stored reward."""
        service = make_service()
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=7))

        service.redeem_reward(minted.id)
        reward = service.get_reward(minted.id)

        assert reward.redeemed is True
        assert reward.redeemed_at is not None
        assert reward.ledger_confirmation is not None

    def test_redeem_unknown_reward(self):
        """Test that redeeming a never-minted reward is not found."""
        with pytest.raises(RewardNotFoundError) as exc_info:
            make_service().redeem_reward("00000000-0000-0000-0000-000000000000")

        assert exc_info.value.kind == "NotFound"

    def test_redeem_with_missing_owner(self):
        """Test that a reward whose owner vanished stays active."""
        service = make_service()
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=3))
        service.users.delete(USER_ID)

        with pytest.raises(UserNotFoundError):
            service.redeem_reward(minted.id)

        assert service.get_reward(minted.id).status == RewardStatus.ACTIVE

    def test_rewards_accumulate(self):
        """Test that several redemptions add up on the ledger."""
        service = make_service()
        first = service.mint_reward(USER_ID, MintRewardRequest(value=100))
        second = service.mint_reward(USER_ID, MintRewardRequest(value=250))

        service.redeem_reward(first.id)
        service.redeem_reward(second.id)

        assert service.get_balance(USER_ID).balance == "350"


class TestConcurrentRedemption:
    """Tests for racing redemptions of one reward."""

    def test_two_concurrent_redeems(self):
        """Test that exactly one of two racing redeems pays out."""
        gateway = FlakyGateway()
        gateway.redeem_delay = 0.05
        service = make_service(gateway=gateway)
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1337))

        def attempt(_):
            try:
                return service.redeem_reward(minted.id).reward
            except AlreadyRedeemedError:
                return "already"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, range(2)))

        assert sorted(outcomes) == ["1337", "already"]
        assert gateway.redeem_calls == 1
        assert service.get_balance(USER_ID).balance == "1337"

    def test_many_concurrent_redeems(self):
        """Test that a burst of redeems still yields a single payout."""
        gateway = FlakyGateway()
        gateway.redeem_delay = 0.01
        service = make_service(gateway=gateway)
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=9))

        def attempt(_):
            try:
                return service.redeem_reward(minted.id).reward
            except AlreadyRedeemedError:
                return "already"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("9") == 1
        assert outcomes.count("already") == 7
        assert gateway.redeem_calls == 1

    def test_second_service_sees_pending_redemption(self):
        """Test that services sharing a store cannot both redeem."""
        users = InMemoryRepository(User)
        rewards = InMemoryRepository(Reward)
        gateway = GatedGateway()
        vault = KeyVault()
        first = make_service(users=users, rewards=rewards, gateway=gateway, vault=vault)
        second = RewardService(users=users, rewards=rewards, gateway=gateway, vault=vault)
        minted = first.mint_reward(USER_ID, MintRewardRequest(value=10))

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(first.redeem_reward, minted.id)
            assert gateway.entered.wait(5)

            with pytest.raises(RedemptionPendingError):
                second.redeem_reward(minted.id)

            gateway.release.set()
            assert future.result(timeout=5).reward == "10"

        with pytest.raises(AlreadyRedeemedError):
            second.redeem_reward(minted.id)


class TestFailureRecovery:
    """Tests for ledger failures and the redemption intent marker."""

    def test_ledger_redeem_failure_rolls_back(self):
        """Test that a failed burn leaves the reward redeemable."""
        gateway = FlakyGateway()
        service = make_service(gateway=gateway)
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=42))

        gateway.fail_redeem = True
        with pytest.raises(MintRewardError):
            service.redeem_reward(minted.id)
        assert service.get_reward(minted.id).status == RewardStatus.ACTIVE

        gateway.fail_redeem = False
        assert service.redeem_reward(minted.id).reward == "42"

    def test_lost_ledger_answer_keeps_pending_marker(self):
        """Test that a burn whose answer timed out stays REDEEMING until recovered."""
        remote = RemoteLedger()
        service = make_service(gateway=remote.gateway())
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1337))

        remote.redeem_failure = "timeout"
        with pytest.raises(RedemptionPendingError):
            service.redeem_reward(minted.id)

        assert service.get_reward(minted.id).status == RewardStatus.REDEEMING
        assert service.pending_redemptions() == [minted.id]
        with pytest.raises(RedemptionPendingError):
            service.redeem_reward(minted.id)
        assert remote.redeem_calls == 1

        recovered = service.recover_redemption(minted.id)

        assert recovered.status == RewardStatus.REDEEMED
        assert service.pending_redemptions() == []
        assert service.get_balance(USER_ID).balance == "1337"

    def test_refused_connection_rolls_back(self):
        """Test that a redeem the ledger never received leaves the reward redeemable."""
        remote = RemoteLedger()
        service = make_service(gateway=remote.gateway())
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=9))

        remote.redeem_failure = "refused"
        with pytest.raises(MintRewardError):
            service.redeem_reward(minted.id)
        assert service.get_reward(minted.id).status == RewardStatus.ACTIVE

        remote.redeem_failure = None
        assert service.redeem_reward(minted.id).reward == "9"
        assert remote.redeem_calls == 2

    def test_lost_final_write_leaves_pending_marker(self):
        """Test that a burn without a recorded redemption is never re-paid."""
        service = make_service(rewards=LosesFinalWrite(Reward))
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=500))

        with pytest.raises(RepositoryError):
            service.redeem_reward(minted.id)

        assert service.get_reward(minted.id).status == RewardStatus.REDEEMING
        assert service.pending_redemptions() == [minted.id]
        with pytest.raises(RedemptionPendingError):
            service.redeem_reward(minted.id)

    def test_recover_burned_token(self):
        """Test that recovery finalizes a reward the ledger already burned."""
        gateway = InMemoryLedgerGateway()
        users = InMemoryRepository(User)
        vault = KeyVault()
        crashing = make_service(users=users, rewards=LosesFinalWrite(Reward), gateway=gateway, vault=vault)
        minted = crashing.mint_reward(USER_ID, MintRewardRequest(value=500))
        with pytest.raises(RepositoryError):
            crashing.redeem_reward(minted.id)

        # Restart on a healthy store holding the same records
        rewards = InMemoryRepository(Reward)
        rewards.create(minted.id, crashing.get_reward(minted.id))
        service = RewardService(users=users, rewards=rewards, gateway=gateway, vault=vault)

        recovered = service.recover_redemption(minted.id)

        assert recovered.status == RewardStatus.REDEEMED
        assert service.get_reward(minted.id).redeemed is True
        assert service.get_balance(USER_ID).balance == "500"
        with pytest.raises(AlreadyRedeemedError):
            service.redeem_reward(minted.id)

    def test_recover_unburned_token(self):
        """Test that recovery reactivates a reward the ledger never burned."""
        service = make_service()
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=8))
        reward = service.get_reward(minted.id)
        service.rewards.update(minted.id, reward.model_copy(update={"status": RewardStatus.REDEEMING}))

        recovered = service.recover_redemption(minted.id)

        assert recovered.status == RewardStatus.ACTIVE
        assert service.redeem_reward(minted.id).reward == "8"

    def test_recover_settled_reward_is_noop(self):
        """Test that recovery leaves active rewards untouched."""
        service = make_service()
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=8))

        assert service.recover_redemption(minted.id) == service.get_reward(minted.id)
        assert service.pending_redemptions() == []

    def test_read_failure_is_not_treated_as_absent(self):
        """Test that storage read errors propagate instead of reading as not-found."""
        service = RewardService(rewards=BrokenReads(Reward))

        with pytest.raises(RepositoryError) as exc_info:
            service.redeem_reward("any")

        assert isinstance(exc_info.value.__cause__, ReadError)


class TestPersistence:
    """Tests for the service over the SQLite store."""

    def test_state_survives_restart(self, tmp_path):
        """Test that users and rewards outlive the store connection."""
        path = str(tmp_path / "rewards.db")
        vault_key = KeyVault.generate_key()
        gateway = InMemoryLedgerGateway()

        store = SqliteStore(path)
        service = RewardService(
            users=store.repository("users", User),
            rewards=store.repository("rewards", Reward),
            gateway=gateway,
            vault=KeyVault(vault_key),
        )
        service.register_user(RegisterRequest(id=USER_ID))
        minted = service.mint_reward(USER_ID, MintRewardRequest(value=1337))
        store.close()

        store = SqliteStore(path)
        service = RewardService(
            users=store.repository("users", User),
            rewards=store.repository("rewards", Reward),
            gateway=gateway,
            vault=KeyVault(vault_key),
        )
        try:
            assert service.get_reward(minted.id).get_value() == 1337
            assert service.redeem_reward(minted.id).reward == "1337"
            assert service.get_balance(USER_ID).balance == "1337"
        finally:
            store.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
