"""Operator catalog: string-keyword parameters, shape inference and array kernels.

Each operator is a thin adapter over an array module (`numpy` on CPU, `cupy`
on GPU). Parameters arrive as a mapping of string keys to string values (the
same form test cases use) and are parsed into frozen attrs classes before the
operator is executed.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from types import ModuleType
from typing import Any

import attrs

from .config import Shape

BACKWARD_PREFIX = "_backward_"


def parse_bool(v: str) -> bool:
    s = str(v).strip().lower()
    if s in {"true", "1"}:
        return True
    if s in {"false", "0"}:
        return False
    raise ValueError(f"Invalid boolean value: {v!r}")


def parse_params(cls: type, op_name: str, kwargs: Mapping[str, str]) -> Any:
    """Parse a string keyword map into the attrs parameter class `cls`.

    Field converters handle the string parsing; unknown and missing required keys
    are rejected with the operator name in the message.
    """
    fields = attrs.fields_dict(cls)
    unknown = sorted(set(kwargs) - set(fields))
    if unknown:
        raise ValueError(f"{op_name}: unknown parameter(s) {unknown}. Known: {sorted(fields)}")
    missing = sorted(k for k, f in fields.items() if f.default is attrs.NOTHING and k not in kwargs)
    if missing:
        raise ValueError(f"{op_name}: missing required parameter(s) {missing}")
    try:
        return cls(**{k: str(v) for k, v in kwargs.items()})
    except (TypeError, ValueError) as e:
        raise ValueError(f"{op_name}: {e}") from e


ACT_TYPES: tuple[str, ...] = ("relu", "sigmoid", "tanh", "softrelu", "softsign")


@attrs.define(frozen=True, slots=True)
class ActivationParam:
    act_type: str = attrs.field(validator=attrs.validators.in_(ACT_TYPES))


@attrs.define(frozen=True, slots=True)
class SGDMomParam:
    lr: float = attrs.field(converter=float)
    momentum: float = attrs.field(default=0.0, converter=float)
    wd: float = attrs.field(default=0.0, converter=float)
    rescale_grad: float = attrs.field(default=1.0, converter=float)
    clip_gradient: float = attrs.field(default=-1.0, converter=float)
    lazy_update: bool = attrs.field(default=True, converter=parse_bool)


def _positive(_instance: Any, attribute: attrs.Attribute, value: int) -> None:
    if value <= 0:
        raise ValueError(f"{attribute.name} must be > 0, got {value}")


@attrs.define(frozen=True, slots=True)
class FullyConnectedParam:
    num_hidden: int = attrs.field(converter=int, validator=_positive)
    no_bias: bool = attrs.field(default=False, converter=parse_bool)
    flatten: bool = attrs.field(default=True, converter=parse_bool)


Arrays = list[Any]


@attrs.define(frozen=True, slots=True)
class OperatorDef:
    name: str
    param_cls: type
    input_names: Callable[[Any], list[str]]
    infer_input_shapes: Callable[[Any, list[Shape]], list[Shape]]
    forward: Callable[[ModuleType, Any, Arrays], Arrays]
    backward: Callable[[ModuleType, Any, Arrays, Arrays, Arrays], Arrays] | None = None

    @property
    def default_backward_name(self) -> str | None:
        return None if self.backward is None else f"{BACKWARD_PREFIX}{self.name}"

    def parse_params(self, kwargs: Mapping[str, str]) -> Any:
        return parse_params(self.param_cls, self.name, kwargs)


def _check_shape_count(op_name: str, given: list[Shape], names: list[str]) -> None:
    if not given:
        raise ValueError(f"{op_name}: at least one input shape is required")
    if len(given) > len(names):
        raise ValueError(f"{op_name}: got {len(given)} input shapes, expected at most {len(names)} ({names})")


def _fill_shapes(op_name: str, given: list[Shape], names: list[str], inferred: list[Shape]) -> list[Shape]:
    for i, g in enumerate(given):
        if g != inferred[i]:
            raise ValueError(f"{op_name}: shape {g} for input {names[i]!r} does not match inferred {inferred[i]}")
    return inferred


# Activation


def _activation_inputs(_p: ActivationParam) -> list[str]:
    return ["data"]


def _activation_shapes(p: ActivationParam, given: list[Shape]) -> list[Shape]:
    _check_shape_count("Activation", given, _activation_inputs(p))
    return list(given)


def _sigmoid(xp: ModuleType, x: Any) -> Any:
    return 1 / (1 + xp.exp(-x))


def _activation_forward(xp: ModuleType, p: ActivationParam, inputs: Arrays) -> Arrays:
    (x,) = inputs
    if p.act_type == "relu":
        return [xp.maximum(x, 0)]
    if p.act_type == "sigmoid":
        return [_sigmoid(xp, x)]
    if p.act_type == "tanh":
        return [xp.tanh(x)]
    if p.act_type == "softrelu":
        return [xp.logaddexp(0, x).astype(x.dtype)]
    return [x / (1 + xp.abs(x))]


def _activation_backward(xp: ModuleType, p: ActivationParam, out_grads: Arrays, inputs: Arrays, outputs: Arrays) -> Arrays:
    (g,) = out_grads
    (x,) = inputs
    (y,) = outputs
    if p.act_type == "relu":
        return [g * (y > 0)]
    if p.act_type == "sigmoid":
        return [g * y * (1 - y)]
    if p.act_type == "tanh":
        # d/dx tanh(x) = 1 - tanh(x)^2, reusing the forward output.
        return [g * (1 - y * y)]
    if p.act_type == "softrelu":
        return [g * _sigmoid(xp, x)]
    return [g / (1 + xp.abs(x)) ** 2]


# sgd_mom_update


def _sgd_mom_inputs(_p: SGDMomParam) -> list[str]:
    return ["weight", "grad", "mom"]


def _sgd_mom_shapes(p: SGDMomParam, given: list[Shape]) -> list[Shape]:
    names = _sgd_mom_inputs(p)
    _check_shape_count("sgd_mom_update", given, names)
    return _fill_shapes("sgd_mom_update", given, names, [given[0]] * len(names))


def _sgd_mom_forward(xp: ModuleType, p: SGDMomParam, inputs: Arrays) -> Arrays:
    """mom = momentum * mom - lr * wd * weight - lr * clip(rescale_grad * grad); weight += mom.

    `weight` and `mom` are updated in place; a negative clip_gradient disables clipping.
    """
    weight, grad, mom = inputs
    g = grad * p.rescale_grad if p.rescale_grad != 1.0 else grad
    if p.clip_gradient >= 0:
        g = xp.clip(g, -p.clip_gradient, p.clip_gradient)
    mom *= p.momentum
    if p.wd != 0.0:
        mom -= (p.lr * p.wd) * weight
    mom -= p.lr * g
    weight += mom
    return [weight]


# FullyConnected


def _fc_inputs(p: FullyConnectedParam) -> list[str]:
    return ["data", "weight"] if p.no_bias else ["data", "weight", "bias"]


def _fc_num_features(p: FullyConnectedParam, data: Shape) -> int:
    if data.ndim < 1:
        raise ValueError("FullyConnected: data must have at least one dimension")
    if p.flatten:
        return Shape(data.dims[1:]).size
    return data.dims[-1]


def _fc_shapes(p: FullyConnectedParam, given: list[Shape]) -> list[Shape]:
    names = _fc_inputs(p)
    _check_shape_count("FullyConnected", given, names)
    data = given[0]
    if data.size == 0:
        raise ValueError(f"FullyConnected: data shape {data} has a zero-size dimension")
    inferred = [data, Shape.of(p.num_hidden, _fc_num_features(p, data))]
    if not p.no_bias:
        inferred.append(Shape.of(p.num_hidden))
    return _fill_shapes("FullyConnected", given, names, inferred)


def _fc_flat(p: FullyConnectedParam, x: Any) -> Any:
    return x.reshape(x.shape[0], -1) if p.flatten else x.reshape(-1, x.shape[-1])


def _fc_forward(xp: ModuleType, p: FullyConnectedParam, inputs: Arrays) -> Arrays:
    x, weight = inputs[0], inputs[1]
    out = xp.matmul(_fc_flat(p, x), weight.T)
    if not p.no_bias:
        out = out + inputs[2]
    if not p.flatten:
        out = out.reshape(*x.shape[:-1], p.num_hidden)
    return [out]


def _fc_backward(xp: ModuleType, p: FullyConnectedParam, out_grads: Arrays, inputs: Arrays, _outputs: Arrays) -> Arrays:
    (g,) = out_grads
    x, weight = inputs[0], inputs[1]
    g2d = g.reshape(-1, p.num_hidden)
    grads = [xp.matmul(g2d, weight).reshape(x.shape), xp.matmul(g2d.T, _fc_flat(p, x))]
    if not p.no_bias:
        grads.append(g2d.sum(axis=0))
    return grads


OPERATORS: dict[str, OperatorDef] = {
    "Activation": OperatorDef(
        name="Activation",
        param_cls=ActivationParam,
        input_names=_activation_inputs,
        infer_input_shapes=_activation_shapes,
        forward=_activation_forward,
        backward=_activation_backward,
    ),
    "sgd_mom_update": OperatorDef(
        name="sgd_mom_update",
        param_cls=SGDMomParam,
        input_names=_sgd_mom_inputs,
        infer_input_shapes=_sgd_mom_shapes,
        forward=_sgd_mom_forward,
    ),
    "FullyConnected": OperatorDef(
        name="FullyConnected",
        param_cls=FullyConnectedParam,
        input_names=_fc_inputs,
        infer_input_shapes=_fc_shapes,
        forward=_fc_forward,
        backward=_fc_backward,
    ),
}


def get_operator(name: str) -> OperatorDef:
    if name not in OPERATORS:
        raise KeyError(f"Unknown operator={name!r}. Known: {sorted(OPERATORS)}")
    return OPERATORS[name]


def infer_shapes(op: OperatorDef, params: Any, given: Sequence[Shape]) -> list[Shape]:
    return op.infer_input_shapes(params, list(given))
