"""Policy category types and their ordinal score tables.

Each of the three policy columns in the curated table is a closed set of
labels. Raw strings are validated against these enums when the table is
loaded, so an unrecognized label fails at ingestion instead of surfacing
as a missing value during clustering.

Scores run 0 (no restriction) to 10 (strictest). The scales were chosen by
hand so all three dimensions are comparable without standardization:

  Stay at home:       -=0, Lifted=3, High-Risk Groups=5,
                      Rolled Back to High Risk Groups=8, Statewide=10
  Large gatherings:   None=0 ... All Gatherings Prohibited=10
  Restaurants:        -=0, Limited Dine-in=2, Reopened=4,
                      Reopened with Capacity Limits=7, Takeout/Delivery only=10

"Rolled Back to High Risk Groups" ranks above "High-Risk Groups" because it
implies a statewide order was in place before the rollback.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from distancing_policy.errors import DistancingPipelineError, MissingCategoryError
from distancing_policy.models import StatePolicyRecord, StateScoreVector

# Column names in the curated policy CSV
STATE_COLUMN = "Location"
STAY_HOME_COLUMN = "Stay at Home Order"
GATHERINGS_COLUMN = "Large Gatherings Ban"
RESTAURANTS_COLUMN = "Restaurant Limits"
POLICY_COLUMNS = (STATE_COLUMN, STAY_HOME_COLUMN, GATHERINGS_COLUMN, RESTAURANTS_COLUMN)


class StayHomeOrder(str, Enum):
    NONE = "-"
    LIFTED = "Lifted"
    HIGH_RISK_GROUPS = "High-Risk Groups"
    ROLLED_BACK_TO_HIGH_RISK = "Rolled Back to High Risk Groups"
    STATEWIDE = "Statewide"


class GatheringsBan(str, Enum):
    NONE = "None"
    LIFTED = "Lifted"
    SPECIAL_TYPES = "Special types of gatherings prohibited"
    EXPANDED_50_PLUS = "Expanded to 50+ People Prohibited"
    EXPANDED_25_PLUS = "Expanded to 25+ People Prohibited"
    EXPANDED_OVER_25 = "Expanded to >25 People Prohibited"
    EXPANDED_20_PLUS = "Expanded to 20+ People Prohibited"
    EXPANDED_OVER_10 = "Expanded to >10 People Prohibited"
    OVER_10 = ">10 People Prohibited"
    OVER_5 = ">5 People Prohibited"
    ALL = "All Gatherings Prohibited"


class RestaurantLimits(str, Enum):
    NONE = "-"
    LIMITED_DINE_IN = "Limited Dine-in Service"
    REOPENED = "Reopened to Dine-in Service"
    REOPENED_WITH_LIMITS = "Reopened to Dine-in Service with Capacity Limits"
    TAKEOUT_ONLY = "Closed Except for Takeout/Delivery"


STAY_HOME_SCORES: dict[StayHomeOrder, int] = {
    StayHomeOrder.NONE: 0,
    StayHomeOrder.LIFTED: 3,
    StayHomeOrder.HIGH_RISK_GROUPS: 5,
    StayHomeOrder.ROLLED_BACK_TO_HIGH_RISK: 8,
    StayHomeOrder.STATEWIDE: 10,
}

GATHERINGS_SCORES: dict[GatheringsBan, int] = {
    GatheringsBan.NONE: 0,
    GatheringsBan.LIFTED: 3,
    GatheringsBan.SPECIAL_TYPES: 3,
    GatheringsBan.EXPANDED_50_PLUS: 4,
    GatheringsBan.EXPANDED_25_PLUS: 5,
    # Same threshold as 25+, the source just words it differently
    GatheringsBan.EXPANDED_OVER_25: 5,
    GatheringsBan.EXPANDED_20_PLUS: 6,
    GatheringsBan.EXPANDED_OVER_10: 7,
    GatheringsBan.OVER_10: 8,
    GatheringsBan.OVER_5: 9,
    GatheringsBan.ALL: 10,
}

RESTAURANT_SCORES: dict[RestaurantLimits, int] = {
    RestaurantLimits.NONE: 0,
    RestaurantLimits.LIMITED_DINE_IN: 2,
    RestaurantLimits.REOPENED: 4,
    RestaurantLimits.REOPENED_WITH_LIMITS: 7,
    RestaurantLimits.TAKEOUT_ONLY: 10,
}

SCORE_TABLES: dict[type[Enum], dict] = {
    StayHomeOrder: STAY_HOME_SCORES,
    GatheringsBan: GATHERINGS_SCORES,
    RestaurantLimits: RESTAURANT_SCORES,
}

MIN_SCORE = 0
MAX_SCORE = 10

# The source table reports "-" or "Other" for these states' gathering bans.
# Each is resolved by hand from the state's published guidance.
GATHERINGS_OVERRIDES: dict[str, GatheringsBan] = {
    "Minnesota": GatheringsBan.SPECIAL_TYPES,
    "North Dakota": GatheringsBan.LIFTED,
    "Connecticut": GatheringsBan.EXPANDED_OVER_25,
    "Florida": GatheringsBan.EXPANDED_50_PLUS,
    "Rhode Island": GatheringsBan.EXPANDED_20_PLUS,
}


def apply_overrides(raw_row: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of a raw policy row with any hand override applied."""
    row = dict(raw_row)
    override = GATHERINGS_OVERRIDES.get((row.get(STATE_COLUMN) or "").strip())
    if override is not None:
        row[GATHERINGS_COLUMN] = override.value
    return row


def parse_category(enum_type: type[Enum], value: object, state: str, field: str) -> Enum:
    """Validate a raw label against its closed category set."""
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        raise MissingCategoryError(state, field, value)
    try:
        return enum_type(value.strip())
    except ValueError:
        raise MissingCategoryError(state, field, value) from None


def parse_policy_record(raw_row: Mapping[str, str]) -> StatePolicyRecord:
    """Build a validated StatePolicyRecord from one raw CSV row.

    Overrides are applied first, so the five hand-resolved states never
    reach validation with their ambiguous source labels.
    """
    row = apply_overrides(raw_row)
    state = (row.get(STATE_COLUMN) or "").strip()
    if not state:
        raise DistancingPipelineError(f"Policy row has no {STATE_COLUMN!r} value: {dict(raw_row)}")
    return StatePolicyRecord(
        state=state,
        stay_home=parse_category(StayHomeOrder, row.get(STAY_HOME_COLUMN), state, STAY_HOME_COLUMN),
        large_gatherings=parse_category(
            GatheringsBan, row.get(GATHERINGS_COLUMN), state, GATHERINGS_COLUMN
        ),
        restaurants=parse_category(
            RestaurantLimits, row.get(RESTAURANTS_COLUMN), state, RESTAURANTS_COLUMN
        ),
    )


def score(category: Enum, state: str = "<unknown>") -> int:
    """Look up the ordinal score for a category member."""
    table = SCORE_TABLES.get(type(category))
    if table is None or category not in table:
        raise MissingCategoryError(state, type(category).__name__, category)
    return table[category]


def recode(record: StatePolicyRecord) -> StateScoreVector:
    return StateScoreVector(
        state=record.state,
        stay_home=score(record.stay_home, record.state),
        large_gatherings=score(record.large_gatherings, record.state),
        restaurants=score(record.restaurants, record.state),
    )


def recode_all(records: Iterable[StatePolicyRecord]) -> list[StateScoreVector]:
    """Recode every record, rejecting duplicate state names."""
    seen: set[str] = set()
    vectors: list[StateScoreVector] = []
    for record in records:
        if record.state in seen:
            raise DistancingPipelineError(f"Duplicate policy record for {record.state}")
        seen.add(record.state)
        vectors.append(recode(record))
    return vectors
