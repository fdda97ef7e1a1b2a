from __future__ import annotations

import numpy as np
import pytest

from coreop_perf.operator_bench import devices
from coreop_perf.operator_bench.config import Shape
from coreop_perf.operator_bench.executor import (
    BWD_OP_NAME_KEY,
    BWD_OP_NAME_NONE,
    FWD_OP_NAME_KEY,
    CoreOpExecutor,
)
from coreop_perf.operator_bench.operators import get_operator


def _executor(shapes: list[tuple[int, ...]], kwargs: dict[str, str], op_name: str, bwd: str = "") -> CoreOpExecutor:
    op = CoreOpExecutor(False, shapes, seed=0)
    op.init(CoreOpExecutor.args_with_op_name(kwargs, op_name, bwd))
    return op


def test_args_with_op_name_adds_reserved_keys_without_mutating_input() -> None:
    kwargs = {"act_type": "tanh"}
    out = CoreOpExecutor.args_with_op_name(kwargs, "Activation", BWD_OP_NAME_NONE)
    assert out == {"act_type": "tanh", FWD_OP_NAME_KEY: "Activation", BWD_OP_NAME_KEY: BWD_OP_NAME_NONE}
    assert kwargs == {"act_type": "tanh"}


def test_inputs_are_seeded_uniform_in_range() -> None:
    a = _executor([(4, 5)], {"act_type": "tanh"}, "Activation")
    b = _executor([(4, 5)], {"act_type": "tanh"}, "Activation")
    (x,) = a.inputs()
    assert x.dtype == np.float32
    assert x.shape == (4, 5)
    assert np.all(x >= -1.0) and np.all(x < 1.0)
    np.testing.assert_array_equal(x, b.inputs()[0])


@pytest.mark.parametrize(
    "act_type,reference",
    [
        ("relu", lambda x: np.maximum(x, 0)),
        ("sigmoid", lambda x: 1 / (1 + np.exp(-x))),
        ("tanh", np.tanh),
        ("softrelu", lambda x: np.log1p(np.exp(x))),
        ("softsign", lambda x: x / (1 + np.abs(x))),
    ],
)
def test_activation_forward_matches_reference(act_type: str, reference) -> None:
    op = _executor([(3, 7)], {"act_type": act_type}, "Activation")
    op.execute()
    (x,) = op.inputs()
    np.testing.assert_allclose(op.outputs()[0], reference(x.astype(np.float64)), rtol=1e-5, atol=1e-6)


def test_tanh_backward_uses_derivative() -> None:
    op = _executor([(5, 5)], {"act_type": "tanh"}, "Activation")
    assert op.has_backward()
    assert op.backward_op_name == "_backward_Activation"
    op.execute()
    op.execute_backward()
    (x,) = op.inputs()
    (dx,) = op.bwd_outputs()
    np.testing.assert_allclose(dx, 1 - np.tanh(x) ** 2, rtol=1e-5, atol=1e-6)
    # output grads + inputs + outputs
    assert len(op.bwd_inputs()) == 3


@pytest.mark.parametrize("act_type", ["relu", "sigmoid", "tanh", "softrelu", "softsign"])
def test_activation_backward_matches_finite_difference(act_type: str) -> None:
    op = CoreOpExecutor(False, [(4, 4)], dtype="float64", seed=1)
    op.init(CoreOpExecutor.args_with_op_name({"act_type": act_type}, "Activation"))
    op.execute()
    op.execute_backward()
    (x,) = op.inputs()
    activation = get_operator("Activation")

    def forward(values: np.ndarray) -> np.ndarray:
        return activation.forward(np, op.params, [values])[0]

    eps = 1e-6
    numeric = (forward(x + eps) - forward(x - eps)) / (2 * eps)
    np.testing.assert_allclose(op.bwd_outputs()[0], numeric, rtol=1e-5, atol=1e-7)


def test_no_backward_when_backward_name_is_none() -> None:
    op = _executor([(5, 5)], {"act_type": "tanh"}, "Activation", BWD_OP_NAME_NONE)
    assert not op.has_backward()
    op.execute()
    with pytest.raises(RuntimeError, match="no backward"):
        op.execute_backward()


def test_unknown_backward_name_raises_key_error() -> None:
    op = CoreOpExecutor(False, [(5, 5)], seed=0)
    with pytest.raises(KeyError):
        op.init(CoreOpExecutor.args_with_op_name({"act_type": "tanh"}, "Activation", "_backward_Other"))


def test_missing_op_name_raises_value_error() -> None:
    op = CoreOpExecutor(False, [(5, 5)], seed=0)
    with pytest.raises(ValueError, match="operator name"):
        op.init({"act_type": "tanh"})


def test_backward_before_forward_raises() -> None:
    op = _executor([(5, 5)], {"act_type": "relu"}, "Activation")
    with pytest.raises(RuntimeError, match="execute"):
        op.execute_backward()


def test_execute_before_init_raises() -> None:
    op = CoreOpExecutor(False, [(5, 5)])
    with pytest.raises(RuntimeError, match="init"):
        op.execute()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lr": "0.01", "clip_gradient": "-1"},
        {"lr": "0.01", "clip_gradient": "0.25"},
        {"lr": "0.1", "momentum": "0.9", "wd": "0.01", "rescale_grad": "2", "clip_gradient": "0.5"},
    ],
)
def test_sgd_mom_update_matches_reference(kwargs: dict[str, str]) -> None:
    op = _executor([(6, 4)], kwargs, "sgd_mom_update", BWD_OP_NAME_NONE)
    weight, grad, mom = (a.astype(np.float64) for a in op.inputs())
    lr = float(kwargs["lr"])
    momentum = float(kwargs.get("momentum", 0.0))
    wd = float(kwargs.get("wd", 0.0))
    clip = float(kwargs["clip_gradient"])
    g = grad * float(kwargs.get("rescale_grad", 1.0))
    if clip >= 0:
        g = np.clip(g, -clip, clip)
    expected_mom = momentum * mom - lr * wd * weight - lr * g
    expected_weight = weight + expected_mom

    op.execute()

    assert not op.has_backward()
    np.testing.assert_allclose(op.outputs()[0], expected_weight, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(op.inputs()[2], expected_mom, rtol=1e-5, atol=1e-6)
    # weight is updated in place
    assert op.outputs()[0] is op.inputs()[0]


def test_positive_clip_bounds_the_update() -> None:
    op = _executor([(50, 50)], {"lr": "1", "clip_gradient": "0.1"}, "sgd_mom_update", BWD_OP_NAME_NONE)
    w0 = op.inputs()[0].copy()
    op.execute()
    assert np.max(np.abs(op.outputs()[0] - w0)) <= 0.1 + 1e-6


def test_fully_connected_forward_and_backward() -> None:
    op = _executor([(2, 3, 4)], {"num_hidden": "5"}, "FullyConnected")
    assert op.input_shapes == [Shape.of(2, 3, 4), Shape.of(5, 12), Shape.of(5)]
    assert op.input_names() == ["data", "weight", "bias"]
    op.execute()
    x, w, b = op.inputs()
    (out,) = op.outputs()
    np.testing.assert_allclose(out, x.reshape(2, -1) @ w.T + b, rtol=1e-5, atol=1e-6)

    op.execute_backward()
    dx, dw, db = op.bwd_outputs()
    ones = np.ones((2, 5), dtype=np.float32)
    np.testing.assert_allclose(dx, (ones @ w).reshape(x.shape), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(dw, ones.T @ x.reshape(2, -1), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(db, np.full(5, 2.0), rtol=1e-6)


def test_fully_connected_without_flatten_contracts_last_axis() -> None:
    op = _executor([(2, 3, 4)], {"num_hidden": "5", "flatten": "false"}, "FullyConnected")
    assert op.input_shapes == [Shape.of(2, 3, 4), Shape.of(5, 4), Shape.of(5)]
    op.execute()
    x, w, b = op.inputs()
    (out,) = op.outputs()
    assert out.shape == (2, 3, 5)
    np.testing.assert_allclose(out, np.einsum("abk,hk->abh", x, w) + b, rtol=1e-5, atol=1e-6)

    op.execute_backward()
    dx, dw, db = op.bwd_outputs()
    ones = np.ones((2, 3, 5), dtype=np.float32)
    assert dx.shape == (2, 3, 4)
    np.testing.assert_allclose(dx, np.einsum("abh,hk->abk", ones, w), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(dw, np.einsum("abh,abk->hk", ones, x), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(db, np.full(5, 6.0), rtol=1e-6)


def test_fully_connected_no_bias_two_shapes() -> None:
    op = _executor([(1, 1, 28, 28), (250, 784)], {"no_bias": "true", "num_hidden": "250"}, "FullyConnected")
    op.execute()
    assert op.outputs()[0].shape == (1, 250)
    assert len(op.inputs()) == 2


def test_float64_dtype_is_respected() -> None:
    op = CoreOpExecutor(False, [(3, 3)], dtype="float64", seed=0)
    op.init(CoreOpExecutor.args_with_op_name({"act_type": "relu"}, "Activation"))
    op.execute()
    assert op.outputs()[0].dtype == np.float64


def test_gpu_request_without_backend_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(devices, "gpu_available", lambda: False)
    with pytest.raises(RuntimeError, match="GPU"):
        CoreOpExecutor(True, [(5, 5)])


def test_print_tensors_only_when_verbose(capsys: pytest.CaptureFixture[str]) -> None:
    op = _executor([(2, 2)], {"act_type": "relu"}, "Activation")
    op.print_tensors("inputs", op.inputs())
    assert capsys.readouterr().out == ""

    op.set_verbose(True)
    op.print_tensors("inputs", op.inputs())
    out = capsys.readouterr().out
    assert "inputs:" in out
    assert "shape=(2, 2)" in out
