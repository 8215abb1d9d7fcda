"""
PlayGuard — Submission Rate Limiter

Pure quota check over a wallet's recent submission timestamps. Holds no
state: the caller fetches the history snapshot and passes it in.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from playguard.config import config
from playguard.errors import Reason
from playguard.validator import ValidationResult

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass(frozen=True)
class RateLimitRules:
    max_per_hour: int = 20
    max_per_day: int = 100
    min_interval_ms: int = 5000

    @classmethod
    def from_config(cls, cfg=config) -> "RateLimitRules":
        return cls(
            max_per_hour=cfg.MAX_GAMES_PER_HOUR,
            max_per_day=cfg.MAX_GAMES_PER_DAY,
            min_interval_ms=cfg.MIN_SUBMISSION_INTERVAL_MS,
        )


def check_rate_limit(
    recent: Iterable[datetime],
    now: datetime,
    rules: RateLimitRules = RateLimitRules(),
) -> ValidationResult:
    result = ValidationResult()
    timestamps = list(recent)

    last_hour = sum(1 for t in timestamps if t > now - HOUR)
    last_day = sum(1 for t in timestamps if t > now - DAY)

    if last_hour >= rules.max_per_hour:
        result.error(Reason.HOURLY, f"Hourly rate limit exceeded: {last_hour}/{rules.max_per_hour} games")

    if last_day >= rules.max_per_day:
        result.error(Reason.DAILY, f"Daily rate limit exceeded: {last_day}/{rules.max_per_day} games")

    if timestamps:
        since_last_ms = (now - max(timestamps)).total_seconds() * 1000
        if since_last_ms < rules.min_interval_ms:
            result.error(Reason.TOO_FAST, f"Submission too fast: {int(since_last_ms)}ms since last game")

    return result
