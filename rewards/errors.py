from typing import Optional


class RewardServiceError(Exception):
    kind = "InternalError"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(RewardServiceError):
    kind = "ValidationError"
    status_code = 400
    default_message = "Invalid payload"


class InvalidKeyError(ValidationError):
    kind = "InvalidData"
    default_message = "Invalid key material"


class UserNotFoundError(RewardServiceError):
    kind = "NotFound"
    status_code = 404
    default_message = "User not found"


class RewardNotFoundError(RewardServiceError):
    kind = "NotFound"
    status_code = 404
    default_message = "Reward not found"


class UserAlreadyExistsError(RewardServiceError):
    kind = "AlreadyExists"
    status_code = 409
    default_message = "User already exists"


class RewardAlreadyExistsError(RewardServiceError):
    kind = "AlreadyExists"
    status_code = 409
    default_message = "Reward already exists"


class AlreadyRedeemedError(RewardServiceError):
    kind = "AlreadyRedeemed"
    status_code = 409
    default_message = "Reward already redeemed"


class RedemptionPendingError(RewardServiceError):
    kind = "RedemptionPending"
    status_code = 409
    default_message = "Reward redemption is pending recovery"


class RepositoryError(RewardServiceError):
    kind = "RepositoryError"
    status_code = 500
    default_message = "Storage failure"


class LedgerError(RewardServiceError):
    kind = "LedgerError"
    status_code = 502
    default_message = "Ledger request failed"


class MintRewardError(LedgerError):
    kind = "MintRewardError"
    default_message = "Failed to mint or redeem reward on the ledger"
