"""Configuration constants for the distancing policy analysis."""

DAILY_REPORT_URL = (
    "https://raw.githubusercontent.com/CSSEGISandData/COVID-19/master/"
    "csse_covid_19_data/csse_covid_19_daily_reports/{date}.csv"
)
POPULATION_URL = (
    "https://www2.census.gov/programs-surveys/popest/datasets/"
    "2010-2019/national/totals/nst-est2019-alldata.csv"
)
POPULATION_ENCODING = "latin-1"

DEFAULT_REPORT_DATE = "2020-06-15"
DEFAULT_POLICY_CSV = "data/policy_categories.csv"
DEFAULT_CACHE_DIR = "data/.cache"

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
RETRY_DELAY = 5  # seconds between retries

USER_AGENT = (
    "DistancingPolicyAnalysis/0.1 "
    "(Research project; comparing state distancing orders with COVID-19 outcomes)"
)
