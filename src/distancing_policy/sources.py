"""Loading the policy table and the two remote outcome sources.

The curated policy table is a local CSV. Case/death counts come from the
Johns Hopkins CSSE daily report for a chosen date, and population comes from
the Census Bureau 2019 state estimates. Both remote files are cached on disk
after the first successful download.
"""

import io
import random
import re
import time
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

import polars as pl
import requests

from distancing_policy.categories import POLICY_COLUMNS, parse_policy_record
from distancing_policy.config import (
    DAILY_REPORT_URL,
    MAX_RETRIES,
    POPULATION_ENCODING,
    POPULATION_URL,
    REQUEST_TIMEOUT,
    RETRY_DELAY,
    USER_AGENT,
)
from distancing_policy.errors import DistancingPipelineError, SourceFetchError
from distancing_policy.models import StatePolicyRecord

# Rows in the census file that are not one of the 50 states' peers
POPULATION_EXCLUDED_NAMES = ("United States", "Puerto Rico Commonwealth")

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_US_DATE_RE = re.compile(r"^\d{2}-\d{2}-\d{4}$")


def normalize_report_date(value: str | date) -> str:
    """Normalize a report date to ISO format.

    Examples:
        "2020-06-15" -> "2020-06-15"
        "06-15-2020" -> "2020-06-15"
    """
    if isinstance(value, date):
        return value.isoformat()
    value = value.strip()
    if _ISO_DATE_RE.match(value):
        parsed = datetime.strptime(value, "%Y-%m-%d")
    elif _US_DATE_RE.match(value):
        parsed = datetime.strptime(value, "%m-%d-%Y")
    else:
        raise ValueError(f"Unrecognized report date {value!r} (use YYYY-MM-DD or MM-DD-YYYY)")
    return parsed.date().isoformat()


def daily_report_url(report_date: str) -> str:
    """CSSE daily reports are named MM-DD-YYYY.csv."""
    iso = normalize_report_date(report_date)
    return DAILY_REPORT_URL.format(date=datetime.strptime(iso, "%Y-%m-%d").strftime("%m-%d-%Y"))


# ── Policy table ─────────────────────────────────────────────────────────────


def read_policy_table(path: Path) -> pl.DataFrame:
    """Read the curated policy CSV with every column kept as a string."""
    df = pl.read_csv(path, infer_schema_length=0)
    missing = [c for c in POLICY_COLUMNS if c not in df.columns]
    if missing:
        raise DistancingPipelineError(f"{path}: missing columns {missing}")
    return df.select(POLICY_COLUMNS)


def load_policy_records(path: Path) -> list[StatePolicyRecord]:
    """Read and validate the policy table into StatePolicyRecords."""
    return [parse_policy_record(row) for row in read_policy_table(path).iter_rows(named=True)]


# ── Outcome tables ───────────────────────────────────────────────────────────


def aggregate_daily_report(report: pl.DataFrame) -> pl.DataFrame:
    """Sum confirmed cases and deaths per US state.

    Daily reports list a state once per county (or admin2 region), so counts
    are grouped by Province_State. Missing counts are treated as zero.

    Returns DataFrame with: state, total_confirmed, total_deaths.
    """
    return (
        report.filter(pl.col("Country_Region") == "US")
        .group_by("Province_State")
        .agg(
            pl.col("Confirmed").fill_null(0).sum().cast(pl.Int64).alias("total_confirmed"),
            pl.col("Deaths").fill_null(0).sum().cast(pl.Int64).alias("total_deaths"),
        )
        .rename({"Province_State": "state"})
        .sort("state")
    )


def filter_population(census: pl.DataFrame) -> pl.DataFrame:
    """Keep state names and 2019 estimates, dropping the national and PR rows.

    Returns DataFrame with: state, population.
    """
    return (
        census.select(
            pl.col("NAME").alias("state"),
            pl.col("POPESTIMATE2019").cast(pl.Int64).alias("population"),
        )
        .filter(~pl.col("state").is_in(list(POPULATION_EXCLUDED_NAMES)))
        .sort("state")
    )


# ── HTTP ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FetchResult:
    """Result of an HTTP fetch attempt."""

    url: str
    text: str | None
    status_code: int | None = None
    error_type: str | None = None  # permanent, transient, timeout, connection
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.text is not None


class SourceFetcher:
    """Downloads the remote CSV sources with retries and an on-disk cache."""

    def __init__(self, cache_dir: Path, retry_delay: float = RETRY_DELAY):
        self.cache_dir = cache_dir
        self.retry_delay = retry_delay
        self.http = requests.Session()
        self.http.headers.update({"User-Agent": USER_AGENT})
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _cache_file(self, url: str) -> Path:
        cache_key = url.split("://", 1)[-1].replace("/", "_").replace(":", "_").replace("?", "_")
        return self.cache_dir / cache_key[-200:]

    def _get(self, url: str, encoding: str = "utf-8") -> FetchResult:
        """Fetch a URL with retries and caching.

        Retry strategy varies by error type:
        - 4xx: permanent, no retry
        - 5xx: exponential backoff
        - Timeout: exponential backoff
        - Connection error: fixed delay
        """
        cache_file = self._cache_file(url)
        if cache_file.exists():
            return FetchResult(url=url, text=cache_file.read_text(encoding="utf-8"))

        last_error = ""
        last_status: int | None = None
        last_error_type: str | None = None
        retry_delay = self.retry_delay
        attempt = 0

        while attempt < MAX_RETRIES:
            try:
                resp = self.http.get(url, timeout=REQUEST_TIMEOUT)
                resp.raise_for_status()
                # utf-8-sig drops the BOM some daily reports start with
                text = resp.content.decode("utf-8-sig" if encoding == "utf-8" else encoding)
                if not text.strip():
                    return FetchResult(
                        url=url,
                        text=None,
                        status_code=resp.status_code,
                        error_type="permanent",
                        error_message="Empty response body",
                    )
                cache_file.write_text(text, encoding="utf-8")
                return FetchResult(url=url, text=text)

            except requests.HTTPError as e:
                last_status = e.response.status_code if e.response is not None else None
                last_error = str(e)
                if last_status is not None and last_status >= 500:
                    last_error_type = "transient"
                    retry_delay = self.retry_delay * (2**attempt) * (1 + random.uniform(0, 0.5))
                else:
                    last_error_type = "permanent"
                    print(f"  Failed: {url}: {e}")
                    break

            except requests.Timeout as e:
                last_error = str(e)
                last_error_type = "timeout"
                last_status = None
                retry_delay = self.retry_delay * (2**attempt) * (1 + random.uniform(0, 0.5))

            except requests.RequestException as e:
                last_error = str(e)
                last_error_type = "connection"
                last_status = None
                retry_delay = self.retry_delay

            attempt += 1
            if attempt < MAX_RETRIES:
                print(f"  Retry {attempt}/{MAX_RETRIES} for {url}: {last_error}")
                time.sleep(retry_delay)
            else:
                print(f"  Failed after {MAX_RETRIES} attempts: {url}: {last_error}")

        return FetchResult(
            url=url,
            text=None,
            status_code=last_status,
            error_type=last_error_type,
            error_message=last_error,
        )

    def fetch_csv(self, url: str, encoding: str = "utf-8") -> pl.DataFrame:
        result = self._get(url, encoding=encoding)
        if not result.ok:
            raise SourceFetchError(
                url, result.error_type, result.status_code, result.error_message or ""
            )
        return pl.read_csv(io.StringIO(result.text), infer_schema_length=10000)

    def fetch_daily_report(self, report_date: str) -> pl.DataFrame:
        """Download the raw CSSE daily report for a date."""
        return self.fetch_csv(daily_report_url(report_date))

    def fetch_population(self) -> pl.DataFrame:
        """Download the raw census state population estimates."""
        return self.fetch_csv(POPULATION_URL, encoding=POPULATION_ENCODING)

    def load_case_counts(self, report_date: str) -> pl.DataFrame:
        return aggregate_daily_report(self.fetch_daily_report(report_date))

    def load_population(self) -> pl.DataFrame:
        return filter_population(self.fetch_population())

    def clear_cache(self) -> None:
        """Delete all cached downloads."""
        removed = 0
        for f in self.cache_dir.iterdir():
            if f.is_file():
                f.unlink()
                removed += 1
        print(f"  Cleared {removed} cached file(s) from {self.cache_dir}")
