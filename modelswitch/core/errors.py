"""Exception taxonomy for model switching."""


class ModelSwitchingError(Exception):
    """Base class for all model switching errors."""


class RegistrationError(ModelSwitchingError):
    """Invalid model or version registration."""


class DuplicateVersionError(RegistrationError):
    """A version string already exists for the model id."""


class NotFoundError(ModelSwitchingError):
    """Unknown model id, version, operation or transition."""


class ConflictError(ModelSwitchingError):
    """A switch operation is already running for the model id."""


class AlreadyActiveError(ConflictError):
    """The requested target version already serves all traffic."""


class InUseError(ModelSwitchingError):
    """The version or instance is referenced by live traffic or a running switch."""


class CacheFullError(ModelSwitchingError):
    """Eviction could not free enough capacity for a new instance."""


class ModelLoadError(ModelSwitchingError):
    """The model loader failed to produce an instance."""


class HealthCheckFailure(ModelSwitchingError):
    """Health thresholds were violated during a switch."""


class DrainTimeoutWarning(UserWarning):
    """An instance still had in-flight requests when the drain window expired."""
