"""Terminal output for the gateci CLI and the reference runner."""

from __future__ import annotations

import sys
from itertools import groupby
from typing import Dict, List, Optional

_STATUS_LABELS = {
    "ok": "SUCCESS",
    "failed": "FAILED",
    "canceled": "CANCELED",
    "not_run": "NOT RUN",
    "pending": "PENDING",
    "started": "STARTED",
}


class Console:
    """
    All user-facing text goes through here, so the CLI stays testable
    and messages keep one shape.

    Args:
        debug: also print debug lines and full failure reasons
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    def _err(self, text: str = "") -> None:
        print(text, file=sys.stderr)

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_plan_summary(self, pipeline) -> None:
        """One line per stage and job of an expanded plan."""
        print(f"\nPIPELINE: {pipeline.name}")
        print(f"Stages: {len(pipeline.stages)}")
        print(f"Jobs: {len(pipeline.jobs)}")
        for idx, stage in enumerate(pipeline.stages):
            gate = "" if idx == 0 else f" (after {pipeline.stages[idx - 1].name})"
            print(f"\nSTAGE {idx + 1}: {stage.name}{gate}")
            for job in stage.jobs:
                bound = f" [maxParallel={job.max_parallel}]" if job.max_parallel else ""
                print(f"  {job.name} ({len(job.steps)} steps){bound}")

    def print_stage_start(self, index: int, name: str, job_count: int) -> None:
        print(f"\n=== Stage {index + 1}: {name} ({job_count} jobs) ===")

    def print_job_start(self, name: str) -> None:
        print(f"JOB STARTED: {name}")

    def print_success(self, name: str) -> None:
        print(f"✓ {name}")

    def print_failure(self, name: str, reason: str = "") -> None:
        """
        Report a failed job. Outside debug mode only the first line of
        ``reason`` is shown.
        """
        print(f"✗ Job failed: {name}")
        if reason:
            print(f"Error: {reason if self.debug else reason.splitlines()[0]}")

    def print_results(self, results: Dict[str, str], state: str) -> None:
        """Final per-job statuses, grouped by stage (keys are ``Stage/Job``)."""
        rule = "=" * 40
        print(f"\n{rule}\nRESULTS: {state}\n{rule}")
        for stage, keys in groupby(results, key=lambda k: k.rpartition("/")[0]):
            print(f"{stage}:")
            for key in keys:
                print(f"  {key.rpartition('/')[2]}: {_STATUS_LABELS.get(results[key], results[key].upper())}")

    def print_trigger(self, pipeline: str, trigger: Optional[str]) -> None:
        verdict = "not triggered" if trigger is None else f"triggered by {trigger}"
        print(f"{pipeline}: {verdict}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Structured error on stderr:

            ERROR: <title>
            <message>
              <detail>...

            <suggestion>
        """
        self._err()
        self._err(f"ERROR: {title}")
        self._err(message)
        for line in details or ():
            self._err(f"  {line}")
        if suggestion:
            self._err()
            self._err(suggestion)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


# set by the CLI group callback
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
