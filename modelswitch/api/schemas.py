"""Pydantic schemas for API requests and responses."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Schema(BaseModel):
    """Base schema allowing model_* field names."""
    model_config = ConfigDict(protected_namespaces=())


class RegisterModelRequest(Schema):
    """Request to register a model version."""
    model: str | None = Field(None, description="Model name, used as id without arch/stage")
    model_arch: str | None = Field(None, description="Model architecture")
    model_stage: str | None = Field(None, description="Deployment stage, e.g. prod or staging")
    version: str = Field(..., description="Version label, unique per model id")
    config: dict[str, Any] = Field(default_factory=dict, description="Loader configuration")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    def to_config(self) -> dict[str, Any]:
        config = dict(self.config)
        for key in ("model", "model_arch", "model_stage"):
            value = getattr(self, key)
            if value is not None:
                config[key] = value
        return config


class RegisterModelResponse(Schema):
    """Response from model registration."""
    model_id: str
    version: str


class ModelVersionInfo(Schema):
    """Registered version information."""
    model_id: str
    version: str
    config: dict[str, Any]
    metadata: dict[str, Any]
    created_at: str


class AssignmentInfo(Schema):
    """Current traffic split of a model id."""
    model_id: str
    primary: str
    weights: dict[str, float]
    updated_at: float


class ServeRequest(Schema):
    """Request served by whichever version the assignment routes to."""
    request: Any = Field(..., description="Opaque model input, e.g. nested lists for tensor models")
    routing_key: str | None = Field(None, description="Sticky routing key, e.g. a user id")


class ServeResponse(Schema):
    """Response from the serving endpoint."""
    response: Any
    model_id: str
    version: str
    latency_ms: float = Field(..., description="Serving latency in milliseconds")


class SwitchRequest(Schema):
    """Request to switch a model to another version."""
    model_id: str = Field(..., description="Model id to switch")
    target_version: str = Field(..., description="Version to move traffic to")
    strategy: str | None = Field(None, description="immediate, gradual, canary or ab_test")
    strategy_config: dict[str, Any] = Field(default_factory=dict, description="Strategy parameters")


class RollbackRequest(Schema):
    """Request to roll a model back to its previous version."""
    strategy: str = Field("immediate", description="Strategy for the rollback switch")
    strategy_config: dict[str, Any] = Field(default_factory=dict)


class SwitchResponse(Schema):
    """Response from starting a switch."""
    operation_id: str


class SwitchOperationInfo(Schema):
    """Switch operation status and progress."""
    operation_id: str
    model_id: str
    from_version: str
    to_version: str
    strategy_type: str
    strategy_config: dict[str, Any]
    status: str
    progress: float
    weights: dict[str, float]
    created_at: float
    started_at: float | None = None
    finished_at: float | None = None
    awaiting_promotion: bool = False
    error: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)


class HealthStatusInfo(Schema):
    """Rolling-window health of one version."""
    model_id: str
    version: str
    request_count: int
    error_count: int
    error_rate: float
    avg_latency_ms: float
    latency_p95_ms: float


class AlertInfo(Schema):
    """An active threshold violation."""
    model_id: str
    version: str
    metric: str
    value: float
    threshold: float
    detected_at: float


class HealthResponse(Schema):
    """Service health check response."""
    status: str = Field(..., description="Service status")
    models: int = Field(..., description="Registered model ids")
    running_switches: int = Field(..., description="Switch operations in progress")
    health_monitoring: bool = Field(..., description="Whether health monitoring is enabled")
