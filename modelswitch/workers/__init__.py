"""Background workers for model switching."""

from .switcher import ModelSwitcher, SwitchOperation, SwitchStatus
from .watcher import CheckpointWatcher

__all__ = ["ModelSwitcher", "SwitchOperation", "SwitchStatus", "CheckpointWatcher"]
