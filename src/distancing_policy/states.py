"""US state names and postal codes.

Names match the curated policy table, the CSSE daily reports and the census
estimates exactly; they are the join key across all three.
"""

from collections.abc import Iterable

from distancing_policy.errors import JoinMismatchError

STATE_CODES = {
    "Alabama": "AL",
    "Alaska": "AK",
    "Arizona": "AZ",
    "Arkansas": "AR",
    "California": "CA",
    "Colorado": "CO",
    "Connecticut": "CT",
    "Delaware": "DE",
    "Florida": "FL",
    "Georgia": "GA",
    "Hawaii": "HI",
    "Idaho": "ID",
    "Illinois": "IL",
    "Indiana": "IN",
    "Iowa": "IA",
    "Kansas": "KS",
    "Kentucky": "KY",
    "Louisiana": "LA",
    "Maine": "ME",
    "Maryland": "MD",
    "Massachusetts": "MA",
    "Michigan": "MI",
    "Minnesota": "MN",
    "Mississippi": "MS",
    "Missouri": "MO",
    "Montana": "MT",
    "Nebraska": "NE",
    "Nevada": "NV",
    "New Hampshire": "NH",
    "New Jersey": "NJ",
    "New Mexico": "NM",
    "New York": "NY",
    "North Carolina": "NC",
    "North Dakota": "ND",
    "Ohio": "OH",
    "Oklahoma": "OK",
    "Oregon": "OR",
    "Pennsylvania": "PA",
    "Rhode Island": "RI",
    "South Carolina": "SC",
    "South Dakota": "SD",
    "Tennessee": "TN",
    "Texas": "TX",
    "Utah": "UT",
    "Vermont": "VT",
    "Virginia": "VA",
    "Washington": "WA",
    "West Virginia": "WV",
    "Wisconsin": "WI",
    "Wyoming": "WY",
}

STATE_NAMES = tuple(STATE_CODES)


def check_state_coverage(names: Iterable[str], source: str = "policy table") -> None:
    """Require exactly the 50 states, by exact name, in a state-keyed table.

    Raises JoinMismatchError listing states absent from the table and names
    in the table that are not one of the 50.
    """
    have = set(names)
    problems: dict[str, list[str]] = {}
    absent = sorted(set(STATE_NAMES) - have)
    if absent:
        problems[source] = absent
    unknown = sorted(have - set(STATE_NAMES))
    if unknown:
        problems[f"{source} (not a state)"] = unknown
    if problems:
        raise JoinMismatchError(problems)
