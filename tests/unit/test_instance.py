"""Unit tests for the PyTorch instance loader."""

import pytest
import torch
import torch.nn as nn

from modelswitch.core.errors import ModelLoadError
from modelswitch.core.instance import (
    ModelInstance,
    TorchModelInstance,
    load_torch_instance,
    resolve_model_class,
)
from modelswitch.core.versions import ModelVersion

LINEAR = {"model_class": "torch.nn:Linear", "init_kwargs": {"in_features": 4, "out_features": 2}}


class TestTorchModelInstance:
    """Tests for TorchModelInstance."""

    def test_serve(self):
        """Test serving converts lists to tensors."""
        instance = TorchModelInstance(("m", "v1"), nn.Linear(4, 2))

        output = instance.serve([[1.0, 2.0, 3.0, 4.0]])

        assert output.shape == (1, 2)
        assert not output.requires_grad

    def test_protocol(self):
        assert isinstance(TorchModelInstance(("m", "v1"), nn.Linear(4, 2)), ModelInstance)

    def test_unload(self):
        instance = TorchModelInstance(("m", "v1"), nn.Linear(4, 2))
        instance.unload()
        instance.unload()

        assert not instance.is_loaded
        assert instance.get_num_parameters() == 0
        with pytest.raises(RuntimeError):
            instance.serve([[0.0] * 4])

    def test_num_parameters(self):
        instance = TorchModelInstance(("m", "v1"), nn.Linear(4, 2))
        assert instance.get_num_parameters() == 10


class TestLoadTorchInstance:
    """Tests for load_torch_instance."""

    def test_load_without_checkpoint(self):
        instance = load_torch_instance(ModelVersion("m", "v1", config=dict(LINEAR)))

        assert instance.instance_key == ("m", "v1")
        assert isinstance(instance.module, nn.Linear)

    def test_load_with_checkpoint(self, temp_dir):
        """Test weights are restored from the checkpoint."""
        source = nn.Linear(4, 2)
        torch.save(source.state_dict(), temp_dir / "v1.pt")
        config = {**LINEAR, "checkpoint_path": str(temp_dir / "v1.pt")}

        instance = load_torch_instance(ModelVersion("m", "v1", config=config))

        assert torch.equal(instance.module.weight, source.weight)

    def test_missing_checkpoint(self, temp_dir):
        config = {**LINEAR, "checkpoint_path": str(temp_dir / "missing.pt")}

        with pytest.raises(ModelLoadError):
            load_torch_instance(ModelVersion("m", "v1", config=config))

    def test_missing_model_class(self):
        with pytest.raises(ModelLoadError):
            load_torch_instance(ModelVersion("m", "v1"))

    def test_bad_init_kwargs(self):
        config = {"model_class": "torch.nn:Linear", "init_kwargs": {"width": 3}}

        with pytest.raises(ModelLoadError):
            load_torch_instance(ModelVersion("m", "v1", config=config))


class TestResolveModelClass:
    """Tests for resolve_model_class."""

    def test_resolve(self):
        assert resolve_model_class("torch.nn:Linear") is nn.Linear

    @pytest.mark.parametrize("path", ["torch.nn.Linear", "no_such_module:Model", "torch.nn:Missing"])
    def test_invalid_paths(self, path):
        with pytest.raises(ModelLoadError):
            resolve_model_class(path)

    def test_not_a_module(self):
        with pytest.raises(ModelLoadError):
            resolve_model_class("pathlib:Path")
