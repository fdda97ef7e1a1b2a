from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np

from . import devices
from .config import Shape, ShapeLike, as_shape
from .operators import OperatorDef, get_operator, infer_shapes

# Reserved keys carrying operator names inside a keyword map.
FWD_OP_NAME_KEY = "__op_name__"
BWD_OP_NAME_KEY = "__backward_op_name__"
# Backward name meaning "this case has no backward pass".
BWD_OP_NAME_NONE = "[none]"

KwArgs = Mapping[str, str]


class CoreOpExecutor:
    """Execution handle for one operator instance on fixed input shapes.

    Missing input shapes are inferred from the operator parameters at `init()`;
    inputs are filled with uniform random values in [-1, 1).
    """

    def __init__(
        self,
        is_gpu: bool,
        shapes: Sequence[ShapeLike],
        *,
        dtype: np.dtype | str = "float32",
        seed: int | None = None,
    ) -> None:
        self.xp = devices.array_module(is_gpu)
        self.is_gpu = is_gpu
        self.dtype = np.dtype(dtype)
        self.requested_shapes: list[Shape] = [as_shape(s) for s in shapes]
        self.seed = seed
        self.verbose = False

        self.op: OperatorDef | None = None
        self.params: Any = None
        self.op_kwargs: dict[str, str] = {}
        self.backward_op_name: str | None = None
        self.input_shapes: list[Shape] = []
        self._inputs: list[Any] = []
        self._outputs: list[Any] = []
        self._bwd_inputs: list[Any] = []
        self._bwd_outputs: list[Any] = []

    @staticmethod
    def args_with_op_name(op_kwargs: KwArgs, op_name: str, backward_op_name: str = "") -> dict[str, str]:
        out = dict(op_kwargs)
        out[FWD_OP_NAME_KEY] = op_name
        out[BWD_OP_NAME_KEY] = backward_op_name
        return out

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose

    def _require_init(self) -> OperatorDef:
        if self.op is None:
            raise RuntimeError("CoreOpExecutor.init() has not been called")
        return self.op

    @property
    def op_name(self) -> str:
        return self._require_init().name

    def init(self, kwargs: KwArgs) -> None:
        op_kwargs = dict(kwargs)
        op_name = op_kwargs.pop(FWD_OP_NAME_KEY, None)
        if not op_name:
            raise ValueError(f"Missing operator name (key {FWD_OP_NAME_KEY!r}); use args_with_op_name()")
        bwd_name = op_kwargs.pop(BWD_OP_NAME_KEY, "")

        op = get_operator(op_name)
        params = op.parse_params(op_kwargs)

        if bwd_name == BWD_OP_NAME_NONE:
            backward_op_name = None
        elif bwd_name == "":
            backward_op_name = op.default_backward_name
        elif bwd_name == op.default_backward_name:
            backward_op_name = bwd_name
        else:
            raise KeyError(f"Unknown backward operator {bwd_name!r} for {op_name!r} (expected {op.default_backward_name!r})")

        self.input_shapes = infer_shapes(op, params, self.requested_shapes)
        self.op = op
        self.params = params
        self.op_kwargs = op_kwargs
        self.backward_op_name = backward_op_name

        rng = np.random.default_rng(self.seed)
        self._inputs = [
            self.xp.asarray(rng.uniform(-1.0, 1.0, size=s.dims).astype(self.dtype)) for s in self.input_shapes
        ]
        self._outputs = []
        self._bwd_inputs = []
        self._bwd_outputs = []

    def inputs(self) -> list[Any]:
        return list(self._inputs)

    def outputs(self) -> list[Any]:
        return list(self._outputs)

    def bwd_inputs(self) -> list[Any]:
        return list(self._bwd_inputs)

    def bwd_outputs(self) -> list[Any]:
        return list(self._bwd_outputs)

    def input_names(self) -> list[str]:
        return self._require_init().input_names(self.params)

    def has_backward(self) -> bool:
        return self.backward_op_name is not None

    def execute(self) -> None:
        op = self._require_init()
        self._outputs = op.forward(self.xp, self.params, self._inputs)

    def execute_backward(self) -> None:
        op = self._require_init()
        if not self.has_backward() or op.backward is None:
            raise RuntimeError(f"{op.name}: no backward pass configured")
        if not self._outputs:
            raise RuntimeError(f"{op.name}: execute() must run before execute_backward()")
        out_grads = [self.xp.ones_like(o) for o in self._outputs]
        self._bwd_inputs = [*out_grads, *self._inputs, *self._outputs]
        self._bwd_outputs = op.backward(self.xp, self.params, out_grads, self._inputs, self._outputs)

    def synchronize(self) -> None:
        devices.synchronize(self.xp)

    def print_tensors(self, title: str, arrays: Sequence[Any]) -> None:
        if not self.verbose:
            return
        print(f"{title}:")
        for i, a in enumerate(arrays):
            print(f"  [{i}] shape={tuple(a.shape)} dtype={a.dtype} device={'gpu' if self.is_gpu else 'cpu'}")
            print(devices.to_numpy(a))
