"""
PlayGuard — Error Taxonomy

Every failure a caller can see is one of these. Token failures mean the
client should start a fresh session; submission and rate rejections only
deny the reward for that attempt. ServiceUnavailable is the one failure
that is not the caller's fault.
"""
import enum
from dataclasses import dataclass


class Reason(str, enum.Enum):
    # Token
    TOKEN_INVALID = "TokenInvalid"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_ALREADY_USED = "TokenAlreadyUsed"
    TOKEN_WALLET_MISMATCH = "TokenWalletMismatch"
    TOKEN_GAME_TYPE_MISMATCH = "TokenGameTypeMismatch"
    UNKNOWN_GAME_TYPE = "UnknownGameType"

    # Submission
    SUBMISSION_REJECTED = "SubmissionRejected"
    IMPOSSIBLE_SPEED = "ImpossibleSpeed"
    DURATION_OUT_OF_BOUNDS = "DurationOutOfBounds"
    ITEM_RATE_EXCEEDED = "ItemRateExceeded"
    COUNTER_INCONSISTENT = "CounterInconsistent"
    NEGATIVE_VALUE = "NegativeValue"
    INTERACTION_RATE_OUT_OF_BOUNDS = "InteractionRateOutOfBounds"
    FEATURE_BEFORE_THRESHOLD = "FeatureBeforeThreshold"
    SESSION_DURATION_MISMATCH = "SessionDurationMismatch"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    HOURLY = "Hourly"
    DAILY = "Daily"
    TOO_FAST = "TooFast"

    # Infrastructure
    SERVICE_UNAVAILABLE = "ServiceUnavailable"


@dataclass(frozen=True)
class Violation:
    code: Reason
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class IntegrityError(Exception):
    """Base class for everything the integrity pipeline raises on purpose."""

    reason = Reason.SERVICE_UNAVAILABLE
    status_code = 400

    def __init__(self, message: str = "", violations: list[Violation] = None):
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value
        self.violations = list(violations or [])

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "errors": [v.to_dict() for v in self.violations],
        }


# ═══════════════════════════════════════════
#              TOKEN FAILURES
# ═══════════════════════════════════════════

class TokenError(IntegrityError):
    status_code = 403


class TokenInvalid(TokenError):
    reason = Reason.TOKEN_INVALID


class TokenExpired(TokenError):
    reason = Reason.TOKEN_EXPIRED


class TokenAlreadyUsed(TokenError):
    reason = Reason.TOKEN_ALREADY_USED


class TokenWalletMismatch(TokenError):
    reason = Reason.TOKEN_WALLET_MISMATCH


class TokenGameTypeMismatch(TokenError):
    reason = Reason.TOKEN_GAME_TYPE_MISMATCH


class UnknownGameType(IntegrityError):
    reason = Reason.UNKNOWN_GAME_TYPE
    status_code = 400


# ═══════════════════════════════════════════
#          SUBMISSION / QUOTA FAILURES
# ═══════════════════════════════════════════

class SubmissionRejected(IntegrityError):
    reason = Reason.SUBMISSION_REJECTED
    status_code = 422


class RateLimitExceeded(IntegrityError):
    reason = Reason.RATE_LIMIT_EXCEEDED
    status_code = 429


# ═══════════════════════════════════════════
#              INFRASTRUCTURE
# ═══════════════════════════════════════════

class StoreUnavailable(Exception):
    """Raised by a store when its backend cannot be reached."""


class ServiceUnavailable(IntegrityError):
    reason = Reason.SERVICE_UNAVAILABLE
    status_code = 503
