"""State social-distancing strictness vs. COVID-19 outcomes."""

__version__ = "0.1.0"

from distancing_policy.categories import recode as recode
from distancing_policy.models import StatePolicyRecord as StatePolicyRecord
from distancing_policy.models import StateScoreVector as StateScoreVector
from distancing_policy.sources import SourceFetcher as SourceFetcher
