"""
PlayGuard — Integrity Gateway

Turns one SubmitResult call into a single accept/reject decision:

    Received -> TokenConsumed -> Validated -> RateChecked -> Accepted
                       \\              \\              \\
                        Rejected(token)  Rejected(validation)  Rejected(rate)

Token first (cheapest, and replayed/forged tokens never reach the
validator), plausibility second, quota last so over-quota but plausible
play is distinguishable from fabricated play in the anomaly log.
"""
import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from playguard.anomaly import AnomalyLogger
from playguard.config import config
from playguard.errors import (
    Reason, ServiceUnavailable, StoreUnavailable, TokenError, Violation,
)
from playguard.limits import LimitRegistry, default_registry
from playguard.models import utcnow
from playguard.ratelimit import DAY, RateLimitRules, check_rate_limit
from playguard.sessions import SessionTokenManager
from playguard.store import SessionToken, Store
from playguard.validator import (
    GameSubmission, calculate_server_difficulty, check_session_duration, validate_submission,
)

logger = logging.getLogger(__name__)


class State(str, enum.Enum):
    RECEIVED = "Received"
    TOKEN_CONSUMED = "TokenConsumed"
    VALIDATED = "Validated"
    RATE_CHECKED = "RateChecked"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


@dataclass
class Decision:
    state: State
    stage: State                        # last state reached before the decision
    reason: Optional[Reason] = None
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    record_id: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.state == State.ACCEPTED

    def to_dict(self) -> dict:
        if self.accepted:
            return {
                "accepted": True,
                "record_id": self.record_id,
                "warnings": [v.to_dict() for v in self.warnings],
            }
        return {
            "accepted": False,
            "state": self.state.value,
            "stage": self.stage.value,
            "reason": self.reason.value if self.reason else None,
            "errors": [v.to_dict() for v in self.errors],
            "warnings": [v.to_dict() for v in self.warnings],
        }


@dataclass(frozen=True)
class AcceptedSubmission:
    """What the downstream reward side receives. No reward amounts here."""
    submission: GameSubmission
    session: SessionToken
    warnings: tuple
    server_difficulty: str
    session_duration_ms: int
    accepted_at: datetime


# ═══════════════════════════════════════════════════════
#                  DEFAULT REWARD SINK
# ═══════════════════════════════════════════════════════

class RecordingSink:
    """Persists the accepted game record; reward computation hangs off this."""

    def __init__(self, store: Store):
        self.store = store

    async def __call__(self, accepted: AcceptedSubmission) -> int:
        sub = accepted.submission
        metadata = sub.counters()
        metadata["difficulty"] = accepted.server_difficulty
        if sub.difficulty and sub.difficulty != accepted.server_difficulty:
            metadata["client_difficulty"] = sub.difficulty

        return await self.store.insert_record({
            "wallet_address": sub.wallet,
            "game_type": sub.game_type,
            "score": sub.score,
            "distance": sub.distance,
            "time_ms": sub.time_ms,
            "game_metadata": metadata,
            "client_info": sub.client_info,
            "session_token": accepted.session.token,
            "session_start_time": accepted.session.start_time,
            "session_duration_ms": accepted.session_duration_ms,
            "validation_warnings": [v.message for v in accepted.warnings] or None,
            "played_at": accepted.accepted_at,
        })


# ═══════════════════════════════════════════════════════
#                     GATEWAY
# ═══════════════════════════════════════════════════════

class IntegrityGateway:

    def __init__(
        self,
        store: Store,
        sessions: SessionTokenManager,
        anomalies: AnomalyLogger,
        registry: LimitRegistry = default_registry,
        rules: RateLimitRules = None,
        sink: Callable = None,
        duration_tolerance_ms: int = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.anomalies = anomalies
        self.registry = registry
        self.rules = rules or RateLimitRules.from_config()
        self.sink = sink or RecordingSink(store)
        self.duration_tolerance_ms = (
            config.SESSION_DURATION_TOLERANCE_MS if duration_tolerance_ms is None else duration_tolerance_ms
        )
        self.clock = clock

    async def submit(
        self,
        sub: GameSubmission,
        token: str,
        ip_address: str = None,
        user_agent: str = None,
    ) -> Decision:
        # 1. Token. Failures here are not anomalies and do not count against quota.
        try:
            session = await self.sessions.validate_and_consume(token, sub.wallet, sub.game_type)
        except TokenError as e:
            logger.info(f"Token rejected wallet={sub.wallet} reason={e.reason.value}")
            return Decision(
                state=State.REJECTED, stage=State.RECEIVED, reason=e.reason,
                errors=[Violation(e.reason, e.message)],
            )

        now = self.clock()

        # 2. Plausibility
        result = validate_submission(sub, self.registry.get(sub.game_type))
        result.merge(check_session_duration(sub, session.start_time, now, self.duration_tolerance_ms))

        if not result.valid:
            self.anomalies.log(
                sub.wallet, "Submission rejected",
                {
                    "game_type": sub.game_type,
                    "errors": [v.to_dict() for v in result.errors],
                    "warnings": [v.to_dict() for v in result.warnings],
                    "submission": _submission_details(sub),
                },
                ip_address=ip_address, user_agent=user_agent,
            )
            return Decision(
                state=State.REJECTED, stage=State.TOKEN_CONSUMED,
                reason=Reason.SUBMISSION_REJECTED,
                errors=result.errors, warnings=result.warnings,
            )

        # 3. Quota, over accepted history only
        try:
            history = await self.store.recent_submission_times(sub.wallet, now - DAY)
        except StoreUnavailable as e:
            raise ServiceUnavailable("Submission history unavailable") from e

        rate = check_rate_limit(history, now, self.rules)
        if not rate.valid:
            self.anomalies.log(
                sub.wallet, "Rate limit exceeded",
                {
                    "game_type": sub.game_type,
                    "errors": [v.to_dict() for v in rate.errors],
                    "recent_games_count": len(history),
                },
                ip_address=ip_address, user_agent=user_agent,
            )
            return Decision(
                state=State.REJECTED, stage=State.VALIDATED,
                reason=Reason.RATE_LIMIT_EXCEEDED,
                errors=rate.errors, warnings=result.warnings,
            )

        # 4. Hand off
        accepted = AcceptedSubmission(
            submission=sub,
            session=session,
            warnings=tuple(result.warnings),
            server_difficulty=calculate_server_difficulty(sub.time_ms),
            session_duration_ms=int((now - session.start_time) / timedelta(milliseconds=1)),
            accepted_at=now,
        )
        try:
            record_id = await self.sink(accepted)
        except StoreUnavailable as e:
            logger.error(f"Accepted submission could not be recorded wallet={sub.wallet}: {e}")
            raise ServiceUnavailable("Failed to save game record") from e

        if result.warnings:
            logger.info(f"Accepted with {len(result.warnings)} warning(s) wallet={sub.wallet}")

        return Decision(
            state=State.ACCEPTED, stage=State.RATE_CHECKED,
            warnings=result.warnings, record_id=record_id,
        )


def _submission_details(sub: GameSubmission) -> dict:
    details = asdict(sub)
    details.pop("client_info", None)
    return details
