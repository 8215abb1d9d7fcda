"""
PlayGuard — Physics Limit Profiles

Per-game plausibility thresholds derived from the game design constants.
Profiles are read-only; a registry is built once and injected wherever
validation happens, so tests can pass tightened limits without touching
the production table.
"""
import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional


class GameType(str, enum.Enum):
    DASH_TRIALS = "dash-trials"
    COSMIC_FLAP = "cosmic-flap"


def _frozen(mapping: Mapping = None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Prerequisite:
    """`counter` can only reach N if `requires` reached N * `per_unit`."""
    counter: str
    requires: str
    per_unit: int


@dataclass(frozen=True)
class PhysicsLimitProfile:
    game_type: str

    max_speed_ms: float                 # metres per second
    min_game_time_ms: int
    max_game_time_ms: int
    max_reward_per_game: int            # consumed by the reward side, carried for reference

    # counter name -> max count per 100 distance units
    item_rate_caps: Mapping[str, float] = field(default_factory=_frozen)

    # score should track this counter within +/- tolerance
    score_field: Optional[str] = None
    score_tolerance: float = 0

    prerequisites: tuple = ()

    # counter name -> distance at which the feature starts spawning
    feature_thresholds: Mapping[str, float] = field(default_factory=_frozen)

    # Interaction rate (taps/flaps). Upper bound catches auto-tappers, lower
    # bound catches progress claimed without playing.
    interaction_field: Optional[str] = None
    max_interactions_per_second: Optional[float] = None
    min_seconds_per_interaction: Optional[float] = None
    min_interaction_distance: float = 0

    def __post_init__(self):
        # Freeze caller-supplied dicts so a profile can never be mutated after registration
        object.__setattr__(self, "item_rate_caps", _frozen(self.item_rate_caps))
        object.__setattr__(self, "feature_thresholds", _frozen(self.feature_thresholds))
        object.__setattr__(self, "prerequisites", tuple(self.prerequisites))


# Fever needs 10 consecutive coins, in every game that has it
FEVER_NEEDS_COINS = Prerequisite("fever_count", "coin_count", 10)


DASH_TRIALS = PhysicsLimitProfile(
    game_type=GameType.DASH_TRIALS.value,
    # Base speed 8 + max fever boost (~1.5x)
    max_speed_ms=12,
    min_game_time_ms=10_000,
    max_game_time_ms=10 * 60 * 1000,
    max_reward_per_game=100,
    item_rate_caps={
        "coin_count": 15,
        "potion_count": 5,
        "fever_count": 1,
        "perfect_count": 5,
    },
    score_field="distance",
    score_tolerance=10,
    prerequisites=(FEVER_NEEDS_COINS,),
)

COSMIC_FLAP = PhysicsLimitProfile(
    game_type=GameType.COSMIC_FLAP.value,
    # Initial speed 4 + max progression ~8
    max_speed_ms=10,
    min_game_time_ms=5_000,
    max_game_time_ms=10 * 60 * 1000,
    max_reward_per_game=100,
    item_rate_caps={
        "coin_count": 20,
        "potion_count": 10,
        "items_collected": 10,     # shield + slow
        "fever_count": 0.5,
        "perfect_count": 0.2,
        "tunnels_passed": 0.5,     # 1 per 500m after 500m
        "ufos_passed": 0.2,        # 1 per 1000m after 1000m
        "obstacles_passed": 50,    # pipe gap ~2.5
    },
    score_field="obstacles_passed",
    score_tolerance=5,
    prerequisites=(FEVER_NEEDS_COINS,),
    feature_thresholds={
        "tunnels_passed": 500,
        "ufos_passed": 1000,
    },
    interaction_field="flap_count",
    max_interactions_per_second=15,
    min_seconds_per_interaction=2,
    min_interaction_distance=50,
)


class LimitRegistry:
    """Immutable game_type -> profile map; doubles as the game-type allow-list."""

    def __init__(self, profiles=()):
        table = {}
        for profile in profiles:
            if profile.game_type in table:
                raise ValueError(f"Duplicate limit profile for {profile.game_type}")
            table[profile.game_type] = profile
        self._profiles = MappingProxyType(table)

    def get(self, game_type: str) -> Optional[PhysicsLimitProfile]:
        return self._profiles.get(game_type)

    def is_known(self, game_type: str) -> bool:
        return game_type in self._profiles

    def game_types(self) -> list[str]:
        return sorted(self._profiles)


default_registry = LimitRegistry([DASH_TRIALS, COSMIC_FLAP])
