# execution.py
from __future__ import annotations

import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .model import ConcreteJob, Pipeline, Stage
from .ui.console import get_console

# ----------------------------------------------------------------------
# Executor contract
# ----------------------------------------------------------------------
#   Pending -> Running(0) -> Running(1) -> ... -> Succeeded
#                    \            \
#                     +------------+--> Failed
#
# Stage i+1 is entered only when every job of stage i reported success.
# Any failure ends the pipeline; later stages are never entered.
# ----------------------------------------------------------------------


class PipelineState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# job statuses
PENDING = "pending"
STARTED = "started"
OK = "ok"
FAILED = "failed"
CANCELED = "canceled"
NOT_RUN = "not_run"


@dataclass
class TransitionError(Exception):
    """A report the state machine cannot accept (wrong stage, wrong state, unknown job)."""
    message: str
    job: Optional[str] = None

    def __str__(self) -> str:
        return self.message if self.job is None else f"[{self.job}] {self.message}"


def job_key(stage: Stage, job: ConcreteJob) -> str:
    """Job names are unique per stage only; run state is keyed by ``Stage/Job``."""
    return f"{stage.name}/{job.name}"


class PipelineExecution:
    """
    Tracks one run of an expanded plan as the executor reports job outcomes.

    The plan itself is never mutated; all run state lives here.
    """

    def __init__(self, pipeline: Pipeline):
        self.pipeline = pipeline
        self.state = PipelineState.PENDING
        self.stage_index: Optional[int] = None
        self.failed_stage: Optional[str] = None
        self.failed_job: Optional[str] = None
        self.results: Dict[str, str] = {job_key(s, j): PENDING for s in pipeline.stages for j in s.jobs}
        self.history: List[str] = [self.describe()]

    # ---- state ----

    def describe(self) -> str:
        if self.state == PipelineState.RUNNING:
            return f"Running({self.stage_index})"
        return self.state.value

    @property
    def current_stage(self) -> Optional[Stage]:
        if self.stage_index is None or self.state != PipelineState.RUNNING:
            return None
        return self.pipeline.stages[self.stage_index]

    @property
    def finished(self) -> bool:
        return self.state in (PipelineState.SUCCEEDED, PipelineState.FAILED)

    def status(self, stage: Stage, job: ConcreteJob) -> str:
        return self.results[job_key(stage, job)]

    def eligible_jobs(self) -> Tuple[ConcreteJob, ...]:
        """Jobs the executor may start right now."""
        stage = self.current_stage
        if stage is None:
            return ()
        return tuple(j for j in stage.jobs if self.status(stage, j) == PENDING)

    # ---- transitions ----

    def _record(self) -> None:
        self.history.append(self.describe())

    def _enter(self, index: int) -> None:
        # empty stages succeed vacuously
        while index < len(self.pipeline.stages) and not self.pipeline.stages[index].jobs:
            index += 1
        if index >= len(self.pipeline.stages):
            self.state = PipelineState.SUCCEEDED
            self.stage_index = len(self.pipeline.stages) - 1
        else:
            self.state = PipelineState.RUNNING
            self.stage_index = index
        self._record()

    def start(self) -> "PipelineExecution":
        if self.state != PipelineState.PENDING:
            raise TransitionError(f"Cannot start a pipeline in state {self.describe()}")
        self._enter(0)
        return self

    def _locate(self, job_name: str) -> Tuple[int, Stage]:
        """
        Find the stage of ``job_name``: either ``Stage/Job`` or a bare job
        name, which prefers the active stage.
        """
        stage_name, sep, bare = job_name.rpartition("/")
        stages = list(enumerate(self.pipeline.stages))
        if sep:
            stages = [(i, s) for i, s in stages if s.name == stage_name]
        elif self.stage_index is not None:
            active = self.stage_index
            stages.sort(key=lambda pair: pair[0] != active)
        for idx, stage in stages:
            if any(j.name == bare for j in stage.jobs):
                return idx, stage
        raise TransitionError("Unknown job", job=job_name)

    def qualify(self, job_name: str) -> str:
        """The ``Stage/Job`` key a bare or qualified job name resolves to."""
        _, stage = self._locate(job_name)
        return f"{stage.name}/{job_name.rpartition('/')[2]}"

    def _still_running(self, stage: Stage, key: str) -> bool:
        # after a failure: started jobs may still finish, and a stage
        # without fail-fast keeps running its pending jobs
        if self.state != PipelineState.FAILED or stage.name != self.failed_stage:
            return False
        status = self.results[key]
        return status == STARTED or (status == PENDING and not stage.fail_fast)

    def _check_active(self, stage_idx: int, stage: Stage, key: str, job_name: str) -> None:
        if self.state != PipelineState.RUNNING:
            raise TransitionError(f"Pipeline is {self.describe()}; no job may report", job=job_name)
        if stage_idx != self.stage_index:
            raise TransitionError(
                f"Job belongs to stage '{stage.name}' which is not running (current: Running({self.stage_index}))",
                job=job_name,
            )
        if self.results[key] not in (PENDING, STARTED):
            raise TransitionError(f"Job already reported {self.results[key]}", job=job_name)

    def mark_started(self, job_name: str) -> None:
        """The executor picked the job up; a fail-fast cancel no longer applies to it."""
        stage_idx, stage = self._locate(job_name)
        key = self.qualify(job_name)
        if not (self._still_running(stage, key) and self.results[key] == PENDING):
            self._check_active(stage_idx, stage, key, job_name)
            if self.results[key] != PENDING:
                raise TransitionError("Job already started", job=job_name)
        self.results[key] = STARTED

    def report(self, job_name: str, ok: bool) -> PipelineState:
        """Record one job outcome and advance the state machine."""
        stage_idx, stage = self._locate(job_name)
        key = self.qualify(job_name)
        late_report = self._still_running(stage, key)
        if not late_report:
            self._check_active(stage_idx, stage, key, job_name)

        self.results[key] = OK if ok else FAILED
        if late_report:
            return self.state

        if not ok:
            self._fail(stage, key)
        elif all(self.status(stage, j) == OK for j in stage.jobs):
            self._enter(stage_idx + 1)
        return self.state

    def _fail(self, stage: Stage, key: str) -> None:
        self.state = PipelineState.FAILED
        self.failed_stage = stage.name
        self.failed_job = key
        if stage.fail_fast:
            for j in stage.jobs:
                if self.status(stage, j) == PENDING:
                    self.results[job_key(stage, j)] = CANCELED
        for later in self.pipeline.stages[self.stage_index + 1:]:
            for j in later.jobs:
                self.results[job_key(later, j)] = NOT_RUN
        self._record()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline.name,
            "state": self.describe(),
            "stage": self.pipeline.stages[self.stage_index].name if self.stage_index is not None else None,
            "failed_stage": self.failed_stage,
            "failed_job": self.failed_job,
            "results": dict(self.results),
            "history": list(self.history),
        }


# ----------------------------------------------------------------------
# Reference runner
# ----------------------------------------------------------------------

def _pool_size(max_workers: Optional[int]) -> int:
    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)
    return max(1, max_workers)


def _next_admissible(ready: List[ConcreteJob], running: Dict[Optional[str], int]) -> Optional[ConcreteJob]:
    """First job in declaration order whose group is below its maxParallel."""
    for idx, job in enumerate(ready):
        if not job.max_parallel or running.get(job.group, 0) < job.max_parallel:
            return ready.pop(idx)
    return None


def run_plan(
    pipeline: Pipeline,
    run_fn: Callable[[ConcreteJob], bool],
    *,
    max_workers: Optional[int] = None,
) -> PipelineExecution:
    """
    Drive a plan through the state machine with a local thread pool.

    ``run_fn(job)`` is the external executor: it returns True on success,
    False (or raises) on failure. Stages run one after another; a fail-fast
    stage stops scheduling on its first failure and cancels what has not
    started. Jobs already running still have their outcomes recorded.
    ``maxParallel`` bounds each expansion group separately.
    """
    console = get_console()
    execution = PipelineExecution(pipeline).start()
    workers = _pool_size(max_workers)

    while execution.state == PipelineState.RUNNING:
        stage_idx = execution.stage_index
        stage = pipeline.stages[stage_idx]
        console.print_stage_start(stage_idx, stage.name, len(stage.jobs))

        ready: List[ConcreteJob] = list(execution.eligible_jobs())
        in_flight: Dict[Future, ConcreteJob] = {}
        running: Dict[Optional[str], int] = {}

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while ready or in_flight:
                stopped = execution.state != PipelineState.RUNNING and stage.fail_fast
                while ready and len(in_flight) < workers and not stopped:
                    job = _next_admissible(ready, running)
                    if job is None:
                        break
                    execution.mark_started(job.name)
                    console.print_job_start(job.name)
                    running[job.group] = running.get(job.group, 0) + 1
                    in_flight[pool.submit(run_fn, job)] = job

                if not in_flight:
                    break

                fut = next(as_completed(list(in_flight.keys())))
                job = in_flight.pop(fut)
                running[job.group] -= 1

                try:
                    ok = bool(fut.result())
                    reason = "" if ok else "executor reported failure"
                except Exception as e:
                    ok = False
                    reason = str(e)

                if ok:
                    console.print_success(job.name)
                else:
                    console.print_failure(job.name, reason)
                execution.report(job.name, ok)

                if execution.state == PipelineState.FAILED and stage.fail_fast:
                    ready.clear()

        if execution.stage_index == stage_idx and execution.state == PipelineState.RUNNING:
            break  # nothing left to schedule but the stage did not complete

    console.print_results(execution.results, execution.describe())
    return execution
