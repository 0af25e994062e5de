from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from flowci.errors import DefinitionError, TriggerError
from flowci.loader import parse_pipeline, parse_yaml
from flowci.params import resolve_parameters

from .db import SessionLocal, create_schema
from .models import Base, Invocation, JobRun, Lease
from .redisq import enqueue_invocation, dequeue_invocation, requeue_invocation, r, lease_lock_key
from .settings import CLAIM_WAIT_SECONDS, LEASE_SECONDS

app = FastAPI(title="flowci Control Plane")

# -------------------- Schemas --------------------

class CreateInvocationRequest(BaseModel):
    repo_url: str
    branch: str
    commit: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    pipeline: str  # YAML description

class CreateInvocationResponse(BaseModel):
    invocation_id: str
    workflows: list[str]

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedInvocation(BaseModel):
    invocation_id: str
    repo_url: str
    branch: str
    commit: str
    parameters: dict[str, Any]
    pipeline: str
    lease_expires_at: str

class CompleteRequest(BaseModel):
    agent_id: str
    status: str  # success|failed
    details: dict[str, Any] = Field(default_factory=dict)

class JobRunResponse(BaseModel):
    workflow: str
    name: str
    status: str
    reason: str
    logs: str | None

class InvocationResponse(BaseModel):
    id: str
    status: str
    branch: str
    commit: str
    workflows: dict[str, str]
    job_runs: list[JobRunResponse]
    error: str | None
    created_at: datetime

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    await create_schema(Base.metadata)

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def _parse_id(invocation_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(invocation_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Invocation not found") from None

# -------------------- Endpoints --------------------

@app.post("/pipelines", response_model=CreateInvocationResponse)
async def create_invocation(req: CreateInvocationRequest):
    # definition and trigger errors are reported before anything is queued
    try:
        pipeline = parse_pipeline(parse_yaml(req.pipeline, source="<request>"), source=req.repo_url)
        params = resolve_parameters(pipeline.parameters, req.parameters, coerce=True)
    except (DefinitionError, TriggerError) as e:
        raise HTTPException(status_code=422, detail={"kind": e.kind, "location": e.location, "message": e.message})

    async with SessionLocal() as s:
        async with s.begin():
            inv = Invocation(
                repo=req.repo_url,
                branch=req.branch,
                commit=req.commit,
                status="queued",
                payload_json={"parameters": params, "pipeline": req.pipeline},
            )
            s.add(inv)
            await s.flush()
            invocation_id = str(inv.id)

    # push to Redis after DB commit
    await enqueue_invocation(invocation_id)

    return CreateInvocationResponse(invocation_id=invocation_id, workflows=list(pipeline.workflows))

@app.post("/leases/claim", response_model=ClaimedInvocation)
async def claim(req: ClaimRequest):
    while True:
        invocation_id = await dequeue_invocation(timeout_s=CLAIM_WAIT_SECONDS)
        if not invocation_id:
            return Response(status_code=204)

        # Lock in Redis to reduce duplicate leasing during retries
        lock_key = lease_lock_key(invocation_id)
        if not await r.set(lock_key, req.agent_id, nx=True, ex=LEASE_SECONDS):
            continue

        expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)

        async with SessionLocal() as s:
            async with s.begin():
                inv = await s.get(Invocation, uuid.UUID(invocation_id))
                if not inv or inv.status in ("success", "failed"):
                    await r.delete(lock_key)
                    continue

                lease = await s.get(Lease, inv.id)
                if lease and lease.expires_at > now_utc():
                    await r.delete(lock_key)
                    await requeue_invocation(invocation_id)
                    continue

                if lease:
                    lease.agent_id = req.agent_id
                    lease.leased_at = now_utc()
                    lease.expires_at = expires_at
                else:
                    s.add(Lease(invocation_id=inv.id, agent_id=req.agent_id, leased_at=now_utc(), expires_at=expires_at))

                inv.status = "running"

                return ClaimedInvocation(
                    invocation_id=invocation_id,
                    repo_url=inv.repo,
                    branch=inv.branch,
                    commit=inv.commit,
                    parameters=inv.payload_json.get("parameters", {}),
                    pipeline=inv.payload_json.get("pipeline", ""),
                    lease_expires_at=expires_at.isoformat(),
                )

@app.post("/leases/{invocation_id}/complete")
async def complete(invocation_id: str, req: CompleteRequest):
    if req.status not in ("success", "failed"):
        raise HTTPException(status_code=400, detail="status must be success|failed")

    inv_id = _parse_id(invocation_id)
    async with SessionLocal() as s:
        async with s.begin():
            inv = await s.get(Invocation, inv_id)
            if not inv:
                raise HTTPException(status_code=404, detail="Invocation not found")

            lease = await s.get(Lease, inv_id)
            if not lease:
                raise HTTPException(status_code=409, detail="No lease for invocation")
            if lease.agent_id != req.agent_id:
                raise HTTPException(status_code=403, detail="Lease owned by different agent")

            report = req.details.get("report") or {}
            logs = req.details.get("logs") or {}
            for run in report.get("job_runs", []):
                key = f"{run['workflow']}/{run['name']}"
                s.add(JobRun(
                    invocation_id=inv_id,
                    workflow=run["workflow"],
                    name=run["name"],
                    status=run["status"],
                    reason=run.get("reason") or "",
                    logs=logs.get(key) or None,
                ))

            inv.status = req.status
            inv.workflows_json = report.get("workflows", {})
            inv.error = req.details.get("error")
            await s.delete(lease)

    await r.delete(lease_lock_key(invocation_id))
    return {"ok": True}

@app.get("/pipelines/{invocation_id}", response_model=InvocationResponse)
async def get_invocation(invocation_id: str):
    """Invocation status with one entry per job run."""
    inv_id = _parse_id(invocation_id)
    async with SessionLocal() as s:
        inv = await s.get(Invocation, inv_id)
        if not inv:
            raise HTTPException(status_code=404, detail="Invocation not found")

        q = sa.select(JobRun).where(JobRun.invocation_id == inv_id).order_by(JobRun.created_at, JobRun.workflow, JobRun.name)
        runs = (await s.execute(q)).scalars().all()

        return InvocationResponse(
            id=str(inv.id),
            status=inv.status,
            branch=inv.branch,
            commit=inv.commit,
            workflows=inv.workflows_json or {},
            job_runs=[
                JobRunResponse(workflow=jr.workflow, name=jr.name, status=jr.status, reason=jr.reason, logs=jr.logs)
                for jr in runs
            ],
            error=inv.error,
            created_at=inv.created_at,
        )
