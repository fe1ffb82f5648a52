"""FastAPI application entry point for the stagegate pipeline engine.

Exposes the run lifecycle over HTTP: start a run from a specification,
inspect it, resolve its approval requests and abandon it. Runs are driven
in the background by the PipelineOrchestrator.

Endpoints:
- POST /runs                      start a run (202)
- GET  /runs/{run_id}             run state with history
- GET  /approvals?runId=          pending approval requests
- POST /runs/{run_id}/approvals   resolve the pending approval of a stage
- POST /runs/{run_id}/abandon     abandon a run
- POST /runs/{run_id}/resume      restart the driver of a stopped run
- GET  /health, /ready, /metrics
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field

from stagegate.agents.llm import LLMContentGenerator
from stagegate.approvals.gateway import ApprovalGateway
from stagegate.approvals.models import ApprovalDecision, ApprovalRequest
from stagegate.audit.log import AuditLog, StructlogAuditSink
from stagegate.audit.models import Actor, ActorType
from stagegate.config import StagegateSettings, get_settings
from stagegate.errors import (
    AlreadyResolvedError,
    ApprovalNotFoundError,
    RunActiveError,
    RunNotFoundError,
    RunTerminalError,
)
from stagegate.events.emitter import EventEmitter, create_event_emitter
from stagegate.events.metrics import generate_metrics_output
from stagegate.logging_config import configure_logging
from stagegate.orchestrator import PipelineOrchestrator, default_executors
from stagegate.quality.runner import QualityGateRunner
from stagegate.runner.agent import AgentCliImplementer
from stagegate.runner.command import CommandRunner
from stagegate.state.machine import PipelineStateMachine, RunRepository
from stagegate.state.models import PipelineRun
from stagegate.state.repository import InMemoryRunRepository, PostgresRunRepository
from stagegate.tasks.coordinator import TaskCommitCoordinator
from stagegate.tasks.vcs import GitVersionControl
from stagegate.tasks.workspace import RunWorkspaces

logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[StagegateSettings] = None
orchestrator: Optional[PipelineOrchestrator] = None
repository: Optional[RunRepository] = None
event_emitter: Optional[EventEmitter] = None


class StartRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    spec_ref: str = Field(..., min_length=1, alias="specRef")
    spec_text: str = Field(..., alias="specText")


class AbandonRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: Optional[str] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: StagegateSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Stagegate configuration:")
    logger.info(f"  Max Stage Retries: {cfg.max_stage_retries}")
    logger.info(f"  Max Regenerations: {cfg.max_regenerations}")
    logger.info(
        "  Quality Gate Checks: "
        + ", ".join(check.name for check in cfg.quality_gate_checks)
    )
    logger.info(f"  Check Timeout Seconds: {cfg.check_timeout_seconds}")
    logger.info(f"  Workspace Path: {cfg.workspace_path}")
    logger.info(f"  State Dir: {cfg.state_dir}")
    logger.info(f"  Agent CLI Path: {cfg.agent_cli_path}")
    logger.info(f"  Agent Timeout Seconds: {cfg.agent_timeout_seconds}")
    logger.info(f"  LLM URL: {cfg.llm_url}")
    logger.info(f"  LLM Model: {cfg.llm_model}")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url)}")
    logger.info(f"  Event Sinks: {', '.join(s.value for s in cfg.event_sinks)}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_orchestrator(
    cfg: StagegateSettings,
    repo: RunRepository,
    emitter: EventEmitter,
) -> PipelineOrchestrator:
    """Wire all pipeline dependencies into a PipelineOrchestrator."""
    audit_log = AuditLog([StructlogAuditSink()])
    state_machine = PipelineStateMachine(
        repository=repo,
        audit_log=audit_log,
        max_stage_retries=cfg.max_stage_retries,
        max_regenerations=cfg.max_regenerations,
    )

    workspace = Path(cfg.workspace_path)
    generator = LLMContentGenerator(
        llm_url=cfg.llm_url,
        model_name=cfg.llm_model,
        timeout=cfg.llm_timeout,
    )
    implementer = AgentCliImplementer(
        command_runner=CommandRunner(timeout_seconds=cfg.agent_timeout_seconds),
        cli_path=cfg.agent_cli_path,
        workspace_path=workspace,
        state_dir=Path(cfg.state_dir),
        tool_name=cfg.agent_tool_name,
        model_name=cfg.llm_model,
        timeout_seconds=cfg.agent_timeout_seconds,
    )
    quality_gate = QualityGateRunner(
        command_runner=CommandRunner(timeout_seconds=cfg.check_timeout_seconds),
        workspace_path=workspace,
        checks=cfg.quality_gate_checks,
    )
    coordinator = TaskCommitCoordinator(
        vcs=GitVersionControl(CommandRunner()),
        audit_log=audit_log,
    )
    workspaces = RunWorkspaces(
        repo_path=workspace,
        worktrees_path=Path(cfg.state_dir) / "worktrees",
        command_runner=CommandRunner(),
    )

    return PipelineOrchestrator(
        state_machine=state_machine,
        gateway=ApprovalGateway(audit_log),
        executors=default_executors(generator, implementer, quality_gate, coordinator, workspaces),
        event_emitter=emitter,
    )


async def _create_repository(cfg: StagegateSettings) -> RunRepository:
    """PostgreSQL when a database URL is configured, in-memory otherwise."""
    if cfg.database_url:
        repo = PostgresRunRepository(cfg.database_url)
        await repo.connect()
        return repo
    logger.warning("No database configured, runs are kept in memory")
    return InMemoryRunRepository()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the pipeline orchestrator
    - Graceful shutdown and cleanup
    """
    global settings, orchestrator, repository, event_emitter

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    logger.info("Stagegate starting up...")
    _log_configuration(settings)

    repository = await _create_repository(settings)
    event_emitter = create_event_emitter(settings.event_sinks)
    orchestrator = _build_orchestrator(settings, repository, event_emitter)

    logger.info("Stagegate started successfully")

    yield

    logger.info("Stagegate shutting down...")

    if orchestrator is not None:
        await orchestrator.shutdown()
    if event_emitter is not None:
        await event_emitter.close()
    if isinstance(repository, PostgresRunRepository):
        await repository.disconnect()

    logger.info("Stagegate shutdown complete")


app = FastAPI(
    title="Stagegate",
    description="Gated specification-to-release pipeline orchestration",
    version="0.1.0",
    lifespan=lifespan,
)


def _require_orchestrator() -> PipelineOrchestrator:
    if orchestrator is None:
        logger.error("Pipeline not initialized")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return orchestrator


def _run_view(run: PipelineRun) -> Dict[str, Any]:
    return run.model_dump(mode="json")


def _approval_view(request: ApprovalRequest) -> Dict[str, Any]:
    return request.model_dump(mode="json")


@app.get("/health")
async def health():
    """Liveness check endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness check endpoint.

    Reports 503 until the orchestrator is wired and the run repository
    answers its health check.
    """
    database_status = "unavailable"
    if repository is not None and await repository.health_check():
        database_status = "healthy"

    is_ready = orchestrator is not None and database_status == "healthy"
    body = {
        "status": "ready" if is_ready else "not_ready",
        "dependencies": {"database": database_status},
    }
    if not is_ready:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/runs", status_code=status.HTTP_202_ACCEPTED)
async def start_run(body: StartRunRequest):
    """Start a run; it is driven in the background."""
    run = await _require_orchestrator().start_run(body.spec_ref, body.spec_text)
    return {"runId": run.run_id}


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    try:
        run = await _require_orchestrator().get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return _run_view(run)


@app.get("/approvals")
async def list_approvals(run_id: Optional[str] = Query(default=None, alias="runId")):
    pending: List[ApprovalRequest] = _require_orchestrator().pending_approvals(run_id)
    return [_approval_view(request) for request in pending]


@app.post("/runs/{run_id}/approvals")
async def submit_decision(run_id: str, decision: ApprovalDecision):
    """Resolve the pending approval request of one stage of a run.

    404 if there is no request, 409 if it was already resolved.
    """
    if decision.run_id != run_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"runId {decision.run_id} does not match {run_id}",
        )
    try:
        resolved = _require_orchestrator().submit_decision(decision)
    except ApprovalNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except AlreadyResolvedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e
    return _approval_view(resolved)


@app.post("/runs/{run_id}/abandon")
async def abandon_run(run_id: str, body: AbandonRequest):
    actor = Actor(id=body.actor, type=ActorType.HUMAN) if body.actor else None
    try:
        run = await _require_orchestrator().abandon(run_id, body.reason, actor)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except RunTerminalError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return _run_view(run)


@app.post("/runs/{run_id}/resume", status_code=status.HTTP_202_ACCEPTED)
async def resume_run(run_id: str):
    """Restart the driver of a run whose driver stopped on an error.

    404 for unknown runs, 409 if the run is terminal or still driven.
    """
    try:
        run = await _require_orchestrator().resume(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (RunTerminalError, RunActiveError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return {"runId": run.run_id, "stage": run.current_stage.value}


def main() -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    cfg = get_settings()
    uvicorn.run("stagegate.main:app", host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
