"""Reusable run context for structured analysis output.

Every analysis phase uses RunContext to get:
  - Structured output directories: results/<survey>/<analysis>/<date>/plots/ + data/
  - Automatic console log capture (run_log.txt)
  - Run metadata (run_info.json): git hash, timestamp, parameters
  - A `latest` symlink pointing to the most recent run
  - A convenience report symlink in the survey root (e.g. 01_data_prep_report.html)

Run-directory mode (pipeline runs):
  When run_id is set, all phases write into a single grouped directory:
    results/<survey>/<run_id>/<analysis>/plots/ + data/
  A survey-level `latest` symlink points to the run directory.

Legacy mode (individual phase runs):
  When run_id is None, each phase writes to its own date directory:
    results/<survey>/<analysis>/<date>/plots/ + data/
  A phase-level `latest` symlink points to the date directory.

Usage:
    with RunContext(
        survey="2013",
        analysis_name="01_data_prep",
        params=vars(args),
        primer=DATA_PREP_PRIMER,
    ) as ctx:
        occurrence.write_parquet(ctx.data_dir / "occurrence_matrix.parquet")
        save_fig(fig, ctx.plots_dir / "richness.png")
"""

from __future__ import annotations

import io
import json
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO
from zoneinfo import ZoneInfo

from redgum.config import RESULTS_ROOT

_TZ = ZoneInfo("Australia/Melbourne")


class _TeeStream:
    """Wraps a stream to duplicate output to both the original stream and a buffer.

    All print() output goes to both the console (so the user sees progress)
    and an internal StringIO buffer (captured for run_log.txt).
    """

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
    """Get the current git commit hash, or 'unknown' if not in a repo."""
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


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string.

    Examples: "3.2s", "1m 45s", "1h 12m 5s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """Unique label for today's run of one phase (261018, 261018.1, ...).

    A symlink named *today* does not count as a previous run.
    """
    first = analysis_dir / today
    if not first.exists() or first.is_symlink():
        return today
    n = 1
    while (analysis_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


def resolve_upstream_dir(
    phase: str,
    results_root: Path,
    run_id: str | None = None,
    override: Path | None = None,
) -> Path:
    """Resolve the output directory of an upstream phase.

    Precedence:
      1. Explicit CLI override (e.g. --prep-dir /some/path)
      2. Run-directory path: results_root/{run_id}/{phase}
      3. Legacy phase path: results_root/{phase}/latest
      4. New-layout fallback: results_root/latest/{phase}

    Raises FileNotFoundError if the resolved directory does not exist, so a
    phase never starts on missing upstream results.
    """
    if override is not None:
        resolved = override
    elif run_id is not None:
        resolved = results_root / run_id / phase
    else:
        legacy = results_root / phase / "latest"
        resolved = legacy if legacy.exists() else results_root / "latest" / phase
    if not resolved.exists():
        msg = f"Upstream phase {phase!r} output not found at {resolved}"
        raise FileNotFoundError(msg)
    return resolved


class RunContext:
    """Context manager that sets up structured output for one phase run.

    Attributes:
        survey: Survey name (e.g. "2013").
        analysis_name: Phase directory name (e.g. "02_flood_groups").
        params: Script parameters recorded in run_info.json.
        run_dir: Root of this run's output.
        plots_dir: PNG/PDF figures.
        data_dir: Parquet/JSON outputs.
        report: ReportBuilder the phase adds sections to; written on exit.
    """

    def __init__(
        self,
        survey: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
        run_id: str | None = None,
    ) -> None:
        self.survey = survey
        self.analysis_name = analysis_name
        self.params = params or {}
        self.run_id = run_id

        self._today = datetime.now(_TZ).strftime("%y%m%d")
        self._survey_root = (results_root or Path(RESULTS_ROOT)) / survey
        if run_id is not None:
            self._analysis_dir = self._survey_root / run_id / analysis_name
            self._run_label = run_id
            self.run_dir = self._analysis_dir
        else:
            self._analysis_dir = self._survey_root / analysis_name
            self._run_label = _next_run_label(self._analysis_dir, self._today)
            self.run_dir = self._analysis_dir / self._run_label
        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None

        try:
            from analysis.report import ReportBuilder
        except ModuleNotFoundError:
            from report import ReportBuilder  # type: ignore[no-redef]
        self.report = ReportBuilder(title=f"{analysis_name.upper()} Report", survey=survey)

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        """Create directories, write the primer, and start capturing stdout."""
        for d in (self.plots_dir, self.data_dir):
            d.mkdir(parents=True, exist_ok=True)
        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(_TZ)

    def finalize(self, *, failed: bool = False) -> None:
        """Write the run log, run_info.json and report, then move `latest`."""
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]
        log_text = self._tee.getvalue() if self._tee is not None else ""
        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        run_info = self._write_run_info(failed)
        print(f"\n{self.analysis_name.upper()} completed in {run_info['elapsed_display']}")

        if self.report.has_sections:
            self._write_report(run_info)
        # Failed runs keep their output but never become `latest`
        if not failed:
            self._update_latest()

    def _write_run_info(self, failed: bool) -> dict:
        end_time = datetime.now(_TZ)
        elapsed = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "analysis": self.analysis_name,
            "survey": self.survey,
            "run_date": self._today,
            "run_label": self._run_label,
            "run_id": self.run_id,
            "failed": failed,
            "timestamp_start": self._start_time.isoformat() if self._start_time else None,
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed, 1),
            "elapsed_display": _format_elapsed(elapsed),
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)
        return run_info

    def _write_report(self, run_info: dict) -> None:
        """Write the HTML report and point results/<survey>/<phase>_report.html at it."""
        self.report.git_hash = run_info["git_commit"]
        self.report.elapsed_display = run_info["elapsed_display"]
        name = f"{self.analysis_name}_report.html"
        self.report.write(self.run_dir / name)

        if self.run_id is not None:
            target = Path("latest") / self.analysis_name / name
        else:
            target = Path(self.analysis_name) / "latest" / name
        _replace_symlink(self._survey_root / name, target)

    def _update_latest(self) -> None:
        if self.run_id is not None:
            _replace_symlink(self._survey_root / "latest", Path(self.run_id))
        else:
            _replace_symlink(self._analysis_dir / "latest", Path(self._run_label))


def _replace_symlink(link: Path, target: Path) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")
