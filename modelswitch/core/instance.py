"""Loaded model instances and the default PyTorch loader."""

import importlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

import torch
import torch.nn as nn

from .errors import ModelLoadError

if TYPE_CHECKING:
    from .versions import ModelVersion

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


@runtime_checkable
class ModelInstance(Protocol):
    """Capability set the switching core needs from a loaded model."""

    @property
    def instance_key(self) -> CacheKey:
        ...

    def serve(self, request: Any) -> Any:
        ...

    def unload(self) -> None:
        ...


ModelLoader = Callable[["ModelVersion"], ModelInstance]


class TorchModelInstance:
    """A PyTorch module bound to a (model_id, version) key."""

    def __init__(self, key: CacheKey, module: nn.Module, device: str = "cpu"):
        self._key = key
        self._device = torch.device(device)
        self._module: nn.Module | None = module.to(self._device)
        self._module.eval()

    @property
    def instance_key(self) -> CacheKey:
        return self._key

    @property
    def module(self) -> nn.Module | None:
        return self._module

    @property
    def is_loaded(self) -> bool:
        return self._module is not None

    def serve(self, request: Any) -> torch.Tensor:
        """Run inference with no_grad context."""
        if self._module is None:
            raise RuntimeError(f"Instance {self._key[0]}:{self._key[1]} is unloaded")

        if not isinstance(request, torch.Tensor):
            request = torch.tensor(request, dtype=torch.float32)

        with torch.no_grad():
            return self._module(request.to(self._device))

    def unload(self) -> None:
        """Release the module and any accelerator memory it held."""
        if self._module is None:
            return
        self._module = None
        if self._device.type == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()
        logger.info(f"Unloaded instance {self._key[0]}:{self._key[1]}")

    def get_num_parameters(self) -> int:
        """Return total number of trainable parameters."""
        if self._module is None:
            return 0
        return sum(p.numel() for p in self._module.parameters() if p.requires_grad)

    def __repr__(self) -> str:
        return f"TorchModelInstance({self._key[0]!r}, {self._key[1]!r})"


def resolve_model_class(path: str) -> type[nn.Module]:
    """Import a module class from a 'package.module:ClassName' path."""
    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ModelLoadError(f"Invalid model_class {path!r}, expected 'package.module:ClassName'")

    try:
        module = importlib.import_module(module_name)
        cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ModelLoadError(f"Cannot import model class {path!r}: {e}") from e

    if not (isinstance(cls, type) and issubclass(cls, nn.Module)):
        raise ModelLoadError(f"{path!r} is not a torch.nn.Module subclass")
    return cls


def load_torch_instance(version: "ModelVersion") -> TorchModelInstance:
    """Build a TorchModelInstance from a version's config.

    Recognised config keys:
        model_class: 'package.module:ClassName' of an nn.Module (required)
        init_kwargs: keyword arguments for the class constructor
        checkpoint_path: optional state dict saved with torch.save
        device: torch device string, defaults to 'cpu'
    """
    config = version.config
    model_class = config.get("model_class")
    if not model_class:
        raise ModelLoadError(f"Version {version.model_id}:{version.version} has no model_class")

    cls = resolve_model_class(model_class)
    try:
        module = cls(**config.get("init_kwargs", {}))
        checkpoint = config.get("checkpoint_path")
        if checkpoint:
            state_dict = torch.load(Path(checkpoint), map_location="cpu", weights_only=True)
            module.load_state_dict(state_dict)
    except (OSError, RuntimeError, TypeError) as e:
        raise ModelLoadError(f"Failed to load {version.model_id}:{version.version}: {e}") from e

    instance = TorchModelInstance(
        key=(version.model_id, version.version),
        module=module,
        device=config.get("device", "cpu"),
    )
    logger.info(
        f"Loaded {version.model_id}:{version.version} "
        f"({instance.get_num_parameters()} parameters)"
    )
    return instance
