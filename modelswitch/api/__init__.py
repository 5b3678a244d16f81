"""FastAPI application and routes."""

from .app import create_app
from .schemas import (
    RegisterModelRequest,
    RegisterModelResponse,
    SwitchRequest,
    SwitchResponse,
    SwitchOperationInfo,
    HealthStatusInfo,
    AlertInfo,
)

__all__ = [
    "create_app",
    "RegisterModelRequest",
    "RegisterModelResponse",
    "SwitchRequest",
    "SwitchResponse",
    "SwitchOperationInfo",
    "HealthStatusInfo",
    "AlertInfo",
]
