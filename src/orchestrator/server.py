from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.common.config import OrchestratorConfig
from src.common.errors import (
    ClusterError,
    HistoryError,
    ImagePolicyError,
    ManifestRejectedError,
    OrchestratorError,
    PlanConsumedError,
    PlanError,
    RenderError,
    RolloutInProgress,
    SecretValidationError,
    UnknownEnvironmentError,
)

from .service import Orchestrator

_STATUS_BY_ERROR = (
    (UnknownEnvironmentError, status.HTTP_404_NOT_FOUND),
    (RolloutInProgress, status.HTTP_409_CONFLICT),
    (PlanError, status.HTTP_409_CONFLICT),
    (PlanConsumedError, status.HTTP_409_CONFLICT),
    (HistoryError, status.HTTP_409_CONFLICT),
    (RenderError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ImagePolicyError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ManifestRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SecretValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ClusterError, status.HTTP_502_BAD_GATEWAY),
)


class RolloutRequest(BaseModel):
    skip_validation: bool = Field(default=False, description="Skip image policy checks and the cluster dry run")
    confirm: bool = Field(
        default=False,
        description="Required for environments that demand confirmation (prod)",
    )


class RolloutResponse(BaseModel):
    environment: str
    record_id: Optional[str] = Field(default=None, description="None when the plan was empty")
    plan_id: str
    phase: str
    actions: Dict[str, int]


class RolloutStatus(BaseModel):
    record_id: str
    environment: str
    phase: Optional[str] = Field(default=None, description="Live phase while this process runs it")
    result: str
    kind: str
    applied_at: float
    finished_at: Optional[float] = None
    previous_id: Optional[str] = None
    detail: str = ""


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rollout Controller",
        description="Starts, tracks and cancels environment rollouts.",
        version="0.1.0",
    )

    @app.exception_handler(OrchestratorError)
    def orchestrator_error(_request: Any, exc: OrchestratorError) -> JSONResponse:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        for error_type, mapped in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                code = mapped
                break
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.post("/environments/{environment}/rollouts", response_model=RolloutResponse, status_code=202)
    def start_rollout(
        environment: str,
        payload: Optional[RolloutRequest] = None,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ) -> RolloutResponse:
        request = payload or RolloutRequest()
        env = orchestrator.environment(environment)
        if env.requires_confirmation and not request.confirm:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{env.name} requires confirm=true",
            )
        prepared = orchestrator.plan(environment, skip_validation=request.skip_validation)
        if not request.skip_validation:
            orchestrator.validate(prepared)
        handle = orchestrator.start(prepared)
        return RolloutResponse(
            environment=env.name,
            record_id=handle.record_id if handle else None,
            plan_id=prepared.plan.id,
            phase=handle.phase.value if handle else "Succeeded",
            actions=prepared.plan.summary(),
        )

    @app.get("/rollouts/{record_id}", response_model=RolloutStatus)
    def get_rollout(record_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> RolloutStatus:
        record = orchestrator.history.get(record_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown rollout {record_id}")
        handle = orchestrator.controller.handle(record_id)
        return RolloutStatus(
            record_id=record.id,
            environment=record.environment,
            phase=handle.phase.value if handle else None,
            result=record.result.value,
            kind=record.kind.value,
            applied_at=record.applied_at,
            finished_at=record.finished_at,
            previous_id=record.previous_id,
            detail=record.detail,
        )

    @app.post("/rollouts/{record_id}/cancel")
    def cancel_rollout(record_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
        handle = orchestrator.controller.handle(record_id)
        if handle is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No active rollout {record_id}")
        if not handle.cancel():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Rollout {record_id} is {handle.phase.value} and can no longer be cancelled",
            )
        return {"record_id": record_id, "cancelled": True, "phase": handle.phase.value}

    @app.get("/environments/{environment}/history")
    def environment_history(
        environment: str,
        limit: int = 20,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ) -> List[Dict[str, Any]]:
        return [record.to_summary() for record in orchestrator.history_of(environment, limit)]

    return app


@lru_cache()
def get_orchestrator() -> Orchestrator:
    return Orchestrator.from_config(OrchestratorConfig.from_env())


app = create_app()


__all__ = [
    "app",
    "create_app",
    "get_orchestrator",
    "RolloutRequest",
    "RolloutResponse",
    "RolloutStatus",
]
