from __future__ import annotations

import pytest

from coreop_perf.operator_bench.config import Shape
from coreop_perf.operator_bench.operators import get_operator, infer_shapes


def _infer(op_name: str, kwargs: dict[str, str], shapes: list[Shape]) -> list[Shape]:
    op = get_operator(op_name)
    return infer_shapes(op, op.parse_params(kwargs), shapes)


def test_sgd_mom_infers_grad_and_mom_from_weight() -> None:
    shapes = _infer("sgd_mom_update", {"lr": "0.01"}, [Shape.of(20, 3, 128, 128)])
    assert shapes == [Shape.of(20, 3, 128, 128)] * 3


def test_sgd_mom_rejects_mismatched_grad_shape() -> None:
    with pytest.raises(ValueError, match="grad"):
        _infer("sgd_mom_update", {"lr": "0.01"}, [Shape.of(5, 5), Shape.of(5, 4)])


def test_fully_connected_infers_weight_from_flattened_data() -> None:
    shapes = _infer("FullyConnected", {"num_hidden": "250", "no_bias": "true"}, [Shape.of(1, 1, 28, 28)])
    assert shapes == [Shape.of(1, 1, 28, 28), Shape.of(250, 784)]


def test_fully_connected_accepts_matching_weight_and_adds_bias() -> None:
    shapes = _infer("FullyConnected", {"num_hidden": "250"}, [Shape.of(50, 3, 18, 32), Shape.of(250, 1728)])
    assert shapes == [Shape.of(50, 3, 18, 32), Shape.of(250, 1728), Shape.of(250)]


def test_fully_connected_without_flatten_uses_last_axis() -> None:
    shapes = _infer("FullyConnected", {"num_hidden": "8", "flatten": "false", "no_bias": "true"}, [Shape.of(2, 3, 4)])
    assert shapes[1] == Shape.of(8, 4)


def test_fully_connected_rejects_inconsistent_weight() -> None:
    with pytest.raises(ValueError, match="weight"):
        _infer("FullyConnected", {"num_hidden": "250", "no_bias": "true"}, [Shape.of(1, 1, 28, 28), Shape.of(250, 100)])


def test_too_many_shapes_are_rejected() -> None:
    with pytest.raises(ValueError, match="at most"):
        _infer("Activation", {"act_type": "relu"}, [Shape.of(2, 2), Shape.of(2, 2)])


def test_no_shapes_are_rejected() -> None:
    with pytest.raises(ValueError, match="at least one"):
        _infer("Activation", {"act_type": "relu"}, [])


def test_fully_connected_rejects_zero_size_data() -> None:
    with pytest.raises(ValueError, match="zero-size"):
        _infer("FullyConnected", {"num_hidden": "4"}, [Shape.of(0, 3)])
