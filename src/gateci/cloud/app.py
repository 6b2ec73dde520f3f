from __future__ import annotations

from typing import Any, Literal

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from gateci import settings
from gateci.composer import expand_pipeline
from gateci.errors import ExpansionError
from gateci.execution import PipelineExecution, TransitionError
from gateci.loader import resolve_pipeline
from gateci.model import Pipeline
from gateci.pipelines import list_pipelines
from gateci.plan import fingerprint, to_dict

from .db import make_engine, make_sessionmaker
from .models import Base, JobOutcome, Run, now_utc

# -------------------- Schemas --------------------

class ExpandRequest(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)

class CreateRunRequest(BaseModel):
    pipeline: str
    parameters: dict[str, Any] = Field(default_factory=dict)

class CompleteRequest(BaseModel):
    status: Literal["ok", "failed"]
    details: dict[str, Any] = Field(default_factory=dict)

class PipelineSummary(BaseModel):
    name: str
    description: str
    automatic: bool
    required_parameters: dict[str, str]

class RunResponse(BaseModel):
    id: str
    pipeline: str
    fingerprint: str
    state: str
    eligible: list[str]
    failed_stage: str | None
    failed_job: str | None
    results: dict[str, str]
    history: list[str]


def _expansion_failed(e: ExpansionError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.to_dict())


def create_app(database_url: str | None = None, pipeline_dir: str | None = None) -> FastAPI:
    engine = make_engine(database_url)
    SessionLocal = make_sessionmaker(engine)
    pipelines_from = pipeline_dir or settings.PIPELINE_DIR

    app = FastAPI(title="gateci plan service")

    # -------------------- Startup --------------------

    @app.on_event("startup")
    async def startup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await engine.dispose()

    # -------------------- Helpers --------------------

    def expand(name: str, parameters: dict[str, Any]) -> Pipeline:
        try:
            definition = resolve_pipeline(name, pipelines_from)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail=f"Pipeline '{name}' not found")
        try:
            return expand_pipeline(definition, parameters)
        except ExpansionError as e:
            raise _expansion_failed(e)

    async def replay(s, run: Run) -> PipelineExecution:
        plan = expand(run.pipeline, run.parameters)
        if fingerprint(plan) != run.fingerprint:
            raise HTTPException(status_code=409, detail="Pipeline definition changed since the run was created")
        execution = PipelineExecution(plan)
        if run.started_at is not None:
            execution.start()
        q = sa.select(JobOutcome).where(JobOutcome.run_id == run.id).order_by(JobOutcome.seq)
        for outcome in (await s.execute(q)).scalars():
            execution.report(outcome.job_key, outcome.status == "ok")
        return execution

    def respond(run: Run, execution: PipelineExecution) -> RunResponse:
        return RunResponse(
            id=run.id,
            pipeline=run.pipeline,
            fingerprint=run.fingerprint,
            state=execution.describe(),
            eligible=[j.name for j in execution.eligible_jobs()],
            failed_stage=execution.failed_stage,
            failed_job=execution.failed_job,
            results=dict(execution.results),
            history=list(execution.history),
        )

    async def get_run(s, run_id: str) -> Run:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    # -------------------- Endpoints --------------------

    @app.get("/pipelines", response_model=list[PipelineSummary])
    async def pipelines():
        return [
            PipelineSummary(
                name=d.name,
                description=d.description,
                automatic=d.triggers.automatic,
                required_parameters=dict(d.triggers.manual.parameters),
            )
            for d in list_pipelines()
        ]

    @app.post("/pipelines/{name}/expand")
    async def expand_plan(name: str, req: ExpandRequest):
        return to_dict(expand(name, req.parameters))

    @app.post("/runs", response_model=RunResponse)
    async def create_run(req: CreateRunRequest):
        plan = expand(req.pipeline, req.parameters)
        async with SessionLocal() as s:
            async with s.begin():
                run = Run(
                    pipeline=req.pipeline,
                    parameters=req.parameters,
                    fingerprint=fingerprint(plan),
                    plan_json=to_dict(plan),
                    status="Pending",
                )
                s.add(run)
                await s.flush()
                return respond(run, PipelineExecution(plan))

    @app.post("/runs/{run_id}/start", response_model=RunResponse)
    async def start_run(run_id: str):
        async with SessionLocal() as s:
            async with s.begin():
                run = await get_run(s, run_id)
                execution = await replay(s, run)
                try:
                    execution.start()
                except TransitionError as e:
                    raise HTTPException(status_code=409, detail=str(e))
                run.started_at = now_utc()
                run.status = execution.describe()
                return respond(run, execution)

    @app.post("/runs/{run_id}/jobs/{job_name:path}/complete", response_model=RunResponse)
    async def complete(run_id: str, job_name: str, req: CompleteRequest):
        async with SessionLocal() as s:
            async with s.begin():
                run = await get_run(s, run_id)
                execution = await replay(s, run)
                try:
                    key = execution.qualify(job_name)
                    execution.report(key, req.status == "ok")
                except TransitionError as e:
                    raise HTTPException(status_code=409, detail=str(e))

                q = sa.select(sa.func.count()).select_from(JobOutcome).where(JobOutcome.run_id == run.id)
                seq = (await s.execute(q)).scalar_one() + 1
                s.add(JobOutcome(run_id=run.id, seq=seq, job_key=key, status=req.status, details=req.details))
                run.status = execution.describe()
                return respond(run, execution)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def read_run(run_id: str):
        async with SessionLocal() as s:
            run = await get_run(s, run_id)
            execution = await replay(s, run)
            return respond(run, execution)

    return app


app = create_app()
