"""API route definitions."""

import logging

import torch
from fastapi import APIRouter, Depends, HTTPException, Request

from .schemas import (
    AlertInfo,
    AssignmentInfo,
    HealthResponse,
    HealthStatusInfo,
    ModelVersionInfo,
    RegisterModelRequest,
    RegisterModelResponse,
    RollbackRequest,
    ServeRequest,
    ServeResponse,
    SwitchOperationInfo,
    SwitchRequest,
    SwitchResponse,
)
from ..core.errors import ModelSwitchingError
from ..runtime import ModelSwitchingRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> ModelSwitchingRuntime:
    """Runtime attached to the application by the app factory."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Model switching runtime not initialized")
    return runtime


# Health and alert endpoints

@router.get("/health", response_model=HealthResponse)
def health_check(runtime: ModelSwitchingRuntime = Depends(get_runtime)) -> HealthResponse:
    """Service health check."""
    return HealthResponse(
        status="healthy",
        models=len(runtime.registry.assignments()),
        running_switches=len(runtime.switcher.get_status()["running"]),
        health_monitoring=runtime.monitor is not None,
    )


@router.get("/health/models", response_model=dict[str, dict[str, HealthStatusInfo]])
def model_health(
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> dict[str, dict[str, HealthStatusInfo]]:
    """Rolling-window health per model id and version."""
    if runtime.monitor is None:
        return {}

    result: dict[str, dict[str, HealthStatusInfo]] = {}
    for (model_id, version), status in runtime.monitor.snapshot_all().items():
        result.setdefault(model_id, {})[version] = HealthStatusInfo(**status.to_dict())
    return result


@router.get("/alerts", response_model=list[AlertInfo])
def list_alerts(runtime: ModelSwitchingRuntime = Depends(get_runtime)) -> list[AlertInfo]:
    """Active threshold violations."""
    if runtime.monitor is None:
        return []
    return [AlertInfo(**alert.to_dict()) for alert in runtime.monitor.get_alerts()]


# Model management endpoints

@router.post("/models", response_model=RegisterModelResponse, status_code=201)
def register_model(
    request: RegisterModelRequest,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> RegisterModelResponse:
    """Register a model version."""
    model_id = runtime.registry.register_model(
        request.to_config(), request.version, metadata=request.metadata
    )
    return RegisterModelResponse(model_id=model_id, version=request.version)


@router.get("/models", response_model=dict[str, list[ModelVersionInfo]])
def list_models(
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> dict[str, list[ModelVersionInfo]]:
    """List registered versions grouped by model id."""
    return {
        model_id: [ModelVersionInfo(**v.to_dict()) for v in versions]
        for model_id, versions in runtime.registry.list_models().items()
    }


@router.get("/models/{model_id}/versions", response_model=list[ModelVersionInfo])
def list_versions(
    model_id: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> list[ModelVersionInfo]:
    """List versions of one model id in registration order."""
    versions = runtime.versions.list_versions(model_id)
    if not versions:
        raise HTTPException(status_code=404, detail=f"Model {model_id} not found")
    return [ModelVersionInfo(**v.to_dict()) for v in versions]


@router.get("/models/{model_id}/compare")
def compare_versions(
    model_id: str,
    v1: str,
    v2: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> dict:
    """Diff two versions of a model id."""
    return runtime.versions.compare_versions(model_id, v1, v2)


@router.delete("/models/{model_id}/versions/{version}", status_code=204)
def deregister_model(
    model_id: str,
    version: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> None:
    """Deregister a version that is not serving traffic."""
    runtime.registry.deregister_model(model_id, version)


@router.get("/models/{model_id}/assignment", response_model=AssignmentInfo)
def get_assignment(
    model_id: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> AssignmentInfo:
    """Current traffic split of a model id."""
    return AssignmentInfo(**runtime.registry.get_assignment(model_id).to_dict())


@router.post("/models/{model_id}/serve", response_model=ServeResponse)
def serve_request(
    model_id: str,
    request: ServeRequest,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> ServeResponse:
    """Serve one request with the version the current split routes to."""
    try:
        result = runtime.engine.serve(model_id, request.request, routing_key=request.routing_key)
    except ModelSwitchingError:
        raise
    except Exception as e:
        logger.error(f"Serving error for {model_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    response = result["response"]
    if isinstance(response, torch.Tensor):
        response = response.tolist()
    return ServeResponse(
        response=response,
        model_id=result["model_id"],
        version=result["version"],
        latency_ms=result["latency_ms"],
    )


@router.post("/models/{model_id}/rollback", response_model=SwitchResponse, status_code=202)
def rollback_model(
    model_id: str,
    request: RollbackRequest | None = None,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> SwitchResponse:
    """Switch back to the version registered before the active one."""
    request = request or RollbackRequest()
    operation_id = runtime.switcher.rollback_model(
        model_id, request.strategy, request.strategy_config
    )
    return SwitchResponse(operation_id=operation_id)


# Switch endpoints

@router.post("/switch", response_model=SwitchResponse, status_code=202)
def switch_model(
    request: SwitchRequest,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> SwitchResponse:
    """Start moving a model's traffic to another version."""
    operation_id = runtime.switcher.switch_model(
        request.model_id,
        request.target_version,
        request.strategy,
        request.strategy_config,
    )
    return SwitchResponse(operation_id=operation_id)


@router.get("/switch/operations", response_model=list[SwitchOperationInfo])
def list_operations(
    model_id: str | None = None,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> list[SwitchOperationInfo]:
    """List switch operations, optionally for one model id."""
    return [
        SwitchOperationInfo(**op.to_dict())
        for op in runtime.switcher.list_operations(model_id)
    ]


@router.get("/switch/operations/{operation_id}", response_model=SwitchOperationInfo)
def get_operation(
    operation_id: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> SwitchOperationInfo:
    """Switch operation status and progress."""
    return SwitchOperationInfo(**runtime.switcher.get_switch_status(operation_id).to_dict())


@router.post("/switch/operations/{operation_id}/abort", response_model=SwitchOperationInfo)
def abort_operation(
    operation_id: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> SwitchOperationInfo:
    """Abort a running switch and revert traffic."""
    operation = runtime.switcher.abort_switch(operation_id)
    return SwitchOperationInfo(**operation.to_dict())


@router.post("/switch/operations/{operation_id}/promote", response_model=SwitchOperationInfo)
def promote_operation(
    operation_id: str,
    runtime: ModelSwitchingRuntime = Depends(get_runtime),
) -> SwitchOperationInfo:
    """Finalize a running switch, moving all traffic to its target."""
    operation = runtime.switcher.promote_switch(operation_id)
    return SwitchOperationInfo(**operation.to_dict())
