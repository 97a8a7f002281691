from __future__ import annotations

import asyncio
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.responses import StreamingResponse

from cifix.errors import InvalidRunRequest
from cifix.models import RunRequest
from cifix.orchestrator.engine import JobOrchestrator
from cifix.service.broadcaster import TERMINAL_EVENT_TYPES, StreamEvent, format_sse
from cifix.settings import Settings


router = APIRouter()


def create_app(settings: Settings | None = None, *, orchestrator: JobOrchestrator | None = None) -> FastAPI:
    """
    App factory used by uvicorn and tests. Every call builds a fresh app with its own job registry.
    """
    s = settings or Settings()
    new_app = FastAPI(title="cifix", version="0.1.0")
    new_app.state.settings = s
    new_app.state.orchestrator = orchestrator or JobOrchestrator(s)
    new_app.include_router(router)
    return new_app


def _orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


async def stream_job_events(
    request: Request, orch: JobOrchestrator, job_id: str, *, keepalive_s: float = 15.0
) -> AsyncGenerator[str, None]:
    """
    SSE feed for one job: initial snapshot, then every broadcast until done/error.
    """
    q = orch.broadcaster.subscribe(job_id)
    try:
        yield ": hello\n\n"
        job = orch.get(job_id)
        if job is None:
            return
        yield format_sse(StreamEvent(type="snapshot", payload=orch.snapshot(job).model_dump(mode="json")))

        final = orch.terminal_event(job)
        if final is not None:
            yield format_sse(final)
            return

        while True:
            if await request.is_disconnected():
                break
            try:
                ev = await asyncio.wait_for(q.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            yield format_sse(ev)
            if ev.type in TERMINAL_EVENT_TYPES:
                break
    finally:
        orch.broadcaster.unsubscribe(job_id, q)


@router.get("/api/health")
def health() -> dict:
    return {"ok": True}


@router.post("/api/run-agent")
async def run_agent(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON."}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object."}, status_code=400)

    try:
        req = RunRequest.model_validate(body)
        job_id = await _orchestrator(request).start(req)
    except ValidationError as e:
        return JSONResponse({"error": f"Invalid request: {e.errors()[0].get('msg', 'invalid body')}"}, status_code=400)
    except InvalidRunRequest as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"jobId": job_id}, status_code=202)


@router.get("/api/run-agent/stream/{job_id}")
async def run_agent_stream(request: Request, job_id: str):
    orch = _orchestrator(request)
    if orch.get(job_id) is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    settings: Settings = request.app.state.settings
    return StreamingResponse(
        stream_job_events(request, orch, job_id, keepalive_s=float(settings.stream_keepalive_s)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/api/jobs/{job_id}")
def job_snapshot(request: Request, job_id: str) -> JSONResponse:
    orch = _orchestrator(request)
    job = orch.get(job_id)
    if job is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    return JSONResponse(orch.snapshot(job).model_dump(mode="json"))


app = create_app()
