"""Reusable run context for structured analysis output.

Every analysis script (strictness, outcomes) uses RunContext to get:
  - Structured output directories: results/<report_date>/<analysis>/<date>/plots/ + data/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamp, parameters
  - A `latest` symlink pointing to the most recent run

Usage:
    with RunContext(
        report_date="2020-06-15",
        analysis_name="strictness",
        params=vars(args),
        primer=STRICTNESS_PRIMER,  # Markdown primer written to results/<date>/strictness/README.md
    ) as ctx:
        # ctx.plots_dir, ctx.data_dir, ctx.run_dir are ready
        df.write_parquet(ctx.data_dir / "cluster_assignments.parquet")
        save_fig(fig, ctx.plots_dir / "plot.png")
"""

from __future__ import annotations

import io
import json
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from distancing_policy.sources import normalize_report_date


class _TeeStream:
    """Copies everything written to stdout into a buffer for run_log.txt."""

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _git_commit_hash() -> str:
    """Commit the analysis code was run from, or 'unknown' outside a checkout."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


class RunContext:
    """One strictness or outcomes run, keyed on the daily report it analyzes.

    Both phases of a report date share results/<report_date>/, so the
    outcomes phase can find the strictness run through its `latest` link.
    run_info.json records the report date, the script parameters, the git
    commit, and whether the run completed or which pipeline error stopped it.
    The console log is kept for failed runs too.

    Attributes:
        report_date: ISO date of the COVID-19 daily report the run is keyed on.
        analysis_name: Name of the analysis phase (e.g. "strictness", "outcomes").
        params: Script parameters to record in run_info.json.
        run_dir: Root of this run's output (results/<report_date>/<analysis>/<date>/).
        plots_dir: Directory for PNG and HTML plots.
        data_dir: Directory for parquet/CSV data files.
    """

    def __init__(
        self,
        report_date: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
    ) -> None:
        self.report_date = normalize_report_date(report_date)
        self.analysis_name = analysis_name
        self.params = params or {}

        root = results_root or Path("results")
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        self.run_dir = root / self.report_date / analysis_name / today
        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        # Parent of date dirs; holds the `latest` symlink and the primer
        self._analysis_dir = root / self.report_date / analysis_name
        self._today = today
        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: io.TextIOBase | None = None
        self._start_time: datetime | None = None
        self._status = "completed"

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self._status = f"failed: {exc_type.__name__}: {exc_val}"
        self.finalize()

    def setup(self) -> None:
        """Create directories, write primer, and start log capture."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.plots_dir.mkdir(exist_ok=True)
        self.data_dir.mkdir(exist_ok=True)

        # Write analysis primer (lives at the analysis level, not per-run)
        if self._primer:
            readme = self._analysis_dir / "README.md"
            readme.write_text(self._primer, encoding="utf-8")

        # Start capturing stdout
        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(timezone.utc)

    def finalize(self) -> None:
        """Write run_log.txt and run_info.json, then point `latest` at this run."""
        log_text = self._stop_capture()
        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(self._run_info(), f, indent=2, default=str)

        # Relative target, so results/ can be moved as a whole
        latest = self._analysis_dir / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(self._today)

    def _stop_capture(self) -> str:
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]
        return self._tee.getvalue() if self._tee is not None else ""

    def _run_info(self) -> dict:
        end_time = datetime.now(timezone.utc)
        elapsed = (end_time - self._start_time).total_seconds() if self._start_time else None
        return {
            "analysis": self.analysis_name,
            "report_date": self.report_date,
            "run_date": self._today,
            "status": self._status,
            "timestamp_start": self._start_time.isoformat() if self._start_time else None,
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": elapsed,
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "params": self.params,
        }
