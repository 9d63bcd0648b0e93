"""Data classes for policy, score, cluster, and outcome records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from distancing_policy.categories import GatheringsBan, RestaurantLimits, StayHomeOrder

MORE_STRICT = "More Strict"
LESS_STRICT = "Less Strict"
CLUSTER_LABELS = (MORE_STRICT, LESS_STRICT)

# Feature order used everywhere a score vector becomes a matrix row
SCORE_FIELDS = ("stay_home", "large_gatherings", "restaurants")


@dataclass(frozen=True)
class StatePolicyRecord:
    """One state's validated policy categories."""
    state: str
    stay_home: StayHomeOrder
    large_gatherings: GatheringsBan
    restaurants: RestaurantLimits


@dataclass(frozen=True)
class StateScoreVector:
    """Ordinal scores (0-10) for one state's three policy dimensions."""
    state: str
    stay_home: int
    large_gatherings: int
    restaurants: int

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.stay_home, self.large_gatherings, self.restaurants)


@dataclass(frozen=True)
class ClusterAssignment:
    state: str
    cluster_id: int  # 1 = More Strict, 2 = Less Strict
    cluster_label: str


@dataclass(frozen=True)
class StateOutcome:
    state: str
    total_confirmed: int
    total_deaths: int
    population: int
    confirmed_per_thousand: float
    deaths_per_thousand: float


@dataclass(frozen=True)
class CombinedRecord:
    """Cluster label joined with per-capita outcomes and their ranks."""
    state: str
    cluster_label: str
    confirmed_per_thousand: float
    deaths_per_thousand: float
    cases_rank: int
    deaths_rank: int
