"""
PlayGuard — Submission Validator

Physics-plausibility checks on a self-reported game result. The server
never replays the game, so every check here compares two client-supplied
numbers against each other or against a limit the real game physics can
not exceed.

Every check runs independently and contributes its own error or warning,
so a rejected submission lists all of its problems at once.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from playguard.errors import Reason, Violation
from playguard.limits import PhysicsLimitProfile

COUNTER_FIELDS = (
    "coin_count",
    "potion_count",
    "fever_count",
    "perfect_count",
    "obstacles_passed",
    "flap_count",
    "tunnels_passed",
    "ufos_passed",
    "items_collected",
)

NUMERIC_FIELDS = ("score", "distance", "time_ms") + COUNTER_FIELDS

# Item rates are measured per this many distance units
RATE_UNIT = 100


@dataclass(frozen=True)
class GameSubmission:
    wallet: str
    game_type: str
    score: float
    distance: float
    time_ms: int

    coin_count: int = 0
    potion_count: int = 0
    fever_count: int = 0
    perfect_count: int = 0
    obstacles_passed: int = 0
    flap_count: int = 0
    tunnels_passed: int = 0
    ufos_passed: int = 0
    items_collected: int = 0

    difficulty: Optional[str] = None   # client claim, informational only
    client_info: Optional[dict] = None

    def counters(self) -> dict:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}


@dataclass
class ValidationResult:
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, code: Reason, message: str):
        self.errors.append(Violation(code, message))

    def warn(self, code: Reason, message: str):
        self.warnings.append(Violation(code, message))

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self

    def error_messages(self) -> list[str]:
        return [v.message for v in self.errors]


# ═══════════════════════════════════════════════════════
#                 INDIVIDUAL CHECKS
# ═══════════════════════════════════════════════════════

def check_non_negative(sub: GameSubmission, result: ValidationResult):
    negative = [name for name in NUMERIC_FIELDS if getattr(sub, name) < 0]
    if negative:
        result.error(Reason.NEGATIVE_VALUE, f"Negative values detected: {', '.join(negative)}")


def check_duration(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    if sub.time_ms < profile.min_game_time_ms:
        result.error(
            Reason.DURATION_OUT_OF_BOUNDS,
            f"Game too short: {sub.time_ms}ms < {profile.min_game_time_ms}ms minimum",
        )
    if sub.time_ms > profile.max_game_time_ms:
        result.error(
            Reason.DURATION_OUT_OF_BOUNDS,
            f"Game too long: {sub.time_ms}ms > {profile.max_game_time_ms}ms maximum",
        )


def check_speed(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    if sub.time_ms <= 0:
        # Any forward progress in zero time is infinitely fast
        if sub.distance > 0:
            result.error(
                Reason.IMPOSSIBLE_SPEED,
                f"Impossible speed: {sub.distance}m in {sub.time_ms}ms",
            )
        return

    speed = sub.distance / (sub.time_ms / 1000)
    if speed > profile.max_speed_ms:
        result.error(
            Reason.IMPOSSIBLE_SPEED,
            f"Impossible speed: {speed:.2f} m/s > {profile.max_speed_ms} m/s max",
        )


def check_score_consistency(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    if not profile.score_field:
        return
    expected = getattr(sub, profile.score_field)
    if abs(sub.score - expected) > profile.score_tolerance:
        result.warn(
            Reason.COUNTER_INCONSISTENT,
            f"Score/{profile.score_field} mismatch: score={sub.score}, {profile.score_field}={expected}",
        )


def distance_units(distance: float) -> float:
    # Short runs are judged as if they covered one full unit
    return max(distance / RATE_UNIT, 1)


def check_item_rates(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    units = distance_units(sub.distance)
    for name, cap in profile.item_rate_caps.items():
        count = getattr(sub, name, 0)
        rate = count / units
        if rate > cap:
            result.error(
                Reason.ITEM_RATE_EXCEEDED,
                f"Too many {name}: {count} in {sub.distance}m ({rate:.1f}/{RATE_UNIT}m > {cap}/{RATE_UNIT}m)",
            )


def max_reachable(prerequisite_count: int, per_unit: int) -> int:
    return math.floor(prerequisite_count / per_unit)


def check_prerequisites(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    for rule in profile.prerequisites:
        count = getattr(sub, rule.counter, 0)
        available = getattr(sub, rule.requires, 0)
        limit = max_reachable(available, rule.per_unit)
        if count > limit:
            result.error(
                Reason.COUNTER_INCONSISTENT,
                f"Impossible {rule.counter}: {count} with only {available} {rule.requires} "
                f"(max possible: {limit})",
            )


def check_interaction_rate(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    if not profile.interaction_field:
        return

    interactions = getattr(sub, profile.interaction_field, 0)
    seconds = sub.time_ms / 1000

    if profile.max_interactions_per_second is not None and seconds > 0:
        per_second = interactions / seconds
        if per_second > profile.max_interactions_per_second:
            result.error(
                Reason.INTERACTION_RATE_OUT_OF_BOUNDS,
                f"Too many {profile.interaction_field}: {per_second:.1f}/sec "
                f"> {profile.max_interactions_per_second} max",
            )

    if profile.min_seconds_per_interaction:
        required = max(1, math.floor(seconds / profile.min_seconds_per_interaction))
        if interactions < required and sub.distance > profile.min_interaction_distance:
            result.error(
                Reason.INTERACTION_RATE_OUT_OF_BOUNDS,
                f"Too few {profile.interaction_field}: {interactions} in {seconds:.1f}s (min: {required})",
            )


def check_feature_thresholds(sub: GameSubmission, profile: PhysicsLimitProfile, result: ValidationResult):
    for name, threshold in profile.feature_thresholds.items():
        if getattr(sub, name, 0) > 0 and sub.distance < threshold:
            result.warn(
                Reason.FEATURE_BEFORE_THRESHOLD,
                f"{name} reported before the {threshold}m threshold (distance={sub.distance})",
            )


CHECKS = (
    check_duration,
    check_speed,
    check_score_consistency,
    check_item_rates,
    check_prerequisites,
    check_interaction_rate,
    check_feature_thresholds,
)


# ═══════════════════════════════════════════════════════
#                   ENTRY POINTS
# ═══════════════════════════════════════════════════════

def validate_submission(sub: GameSubmission, profile: Optional[PhysicsLimitProfile]) -> ValidationResult:
    """
    Check a submission against its game's limit profile.

    With no profile (unregistered game type) the submission passes with a
    warning; the allow-list on session creation is what keeps unknown game
    types out of production traffic.
    """
    result = ValidationResult()

    if profile is None:
        result.warn(Reason.UNKNOWN_GAME_TYPE, f"Unknown game type: {sub.game_type}")
        return result

    for check in CHECKS:
        check(sub, profile, result)
    check_non_negative(sub, result)

    return result


def calculate_server_difficulty(time_ms: int) -> str:
    """Server-authoritative difficulty; the client's claim is ignored."""
    seconds = time_ms / 1000
    if seconds < 30:
        return "easy"
    if seconds < 60:
        return "medium"
    if seconds < 120:
        return "hard"
    return "extreme"


def check_session_duration(
    sub: GameSubmission,
    session_start: datetime,
    now: datetime,
    tolerance_ms: int,
) -> ValidationResult:
    """Warn when the claimed play time is longer than the session actually lasted."""
    result = ValidationResult()
    observed_ms = int((now - session_start).total_seconds() * 1000)
    if sub.time_ms > observed_ms + tolerance_ms:
        result.warn(
            Reason.SESSION_DURATION_MISMATCH,
            f"Claimed {sub.time_ms}ms but session lasted {observed_ms}ms",
        )
    return result
