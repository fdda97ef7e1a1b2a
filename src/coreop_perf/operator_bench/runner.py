from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Any

import attrs

from .config import (
    BIDIRECTIONAL_SHAPE,
    FC_PRIME_SHAPES,
    PRIME_SHAPE,
    STOCHASTIC_BATCH_SIZE,
    STOCHASTIC_CHANNELS,
    STOCHASTIC_DEPTH,
    STOCHASTIC_HW,
    TIMING_BATCH_SIZE,
    TIMING_CHANNELS,
    TIMING_DEPTH,
    TIMING_HEIGHT,
    TIMING_WIDTH,
    RunSettings,
    Shape,
    ShapeLike,
    as_shape,
    fc_timing_shape_pairs,
    timing_shapes,
)
from .executor import BWD_OP_NAME_KEY, FWD_OP_NAME_KEY, CoreOpExecutor, KwArgs
from .timing import TimingInstrument

# Call count and shape rank used by the operator timing tests.
TIMING_CALLS = 10
TIMING_DIM = 2


@attrs.define(slots=True)
class BenchSession:
    """Mutable state shared by the cases of one run: settings plus collected records."""

    settings: RunSettings = attrs.field(factory=RunSettings)
    suite: str = ""
    case: str = ""
    records: list[dict[str, Any]] = attrs.field(factory=list)

    def begin_case(self, suite: str, case: str) -> None:
        self.suite = suite
        self.case = case

    def add_record(self, record: dict[str, Any]) -> None:
        self.records.append({"suite": self.suite, "case": self.case, **record})


def pu_name(is_gpu: bool) -> str:
    return "GPU" if is_gpu else "CPU"


def generate_timing_shape(rng: random.Random, *, stochastic: bool, dim: int) -> Shape:
    """Generate one timing shape of rank 3 (dim=1), 4 (dim=2) or 5 (dim=3).

    `dim=0` picks the rank at random. Stochastic shapes never have a 1x1 spatial extent.
    """
    if dim < 0 or dim > 3:
        raise ValueError(f"dim must be in 0..3, got {dim}")
    while True:
        if stochastic:
            batch = rng.randint(1, STOCHASTIC_BATCH_SIZE * 2)
            channels = rng.randint(1, STOCHASTIC_CHANNELS)
            depth = rng.randint(1, STOCHASTIC_DEPTH)
            height = rng.randint(1, STOCHASTIC_HW)
            width = rng.randint(1, STOCHASTIC_HW)
        else:
            batch, channels, depth = TIMING_BATCH_SIZE, TIMING_CHANNELS, TIMING_DEPTH
            height, width = TIMING_HEIGHT, TIMING_WIDTH
        if not stochastic or height * width > 1:
            break

    rank_index = dim - 1 if dim else rng.randint(0, 2)
    if rank_index == 0:
        return Shape.of(batch, channels, width)
    if rank_index == 1:
        return Shape.of(batch, channels, height, width)
    return Shape.of(batch, channels, depth, height, width)


class CoreOperatorRunner:
    def __init__(self, session: BenchSession) -> None:
        self.session = session
        self._rng = random.Random(session.settings.seed)

    def make_executor(self, is_gpu: bool, shapes: Sequence[ShapeLike], kwargs: KwArgs) -> CoreOpExecutor:
        settings = self.session.settings
        op = CoreOpExecutor(is_gpu, shapes, dtype=settings.np_dtype, seed=settings.seed)
        op.set_verbose(settings.verbose)
        op.init(kwargs)
        return op

    def run_bidirectional(
        self, is_gpu: bool, shapes: Sequence[ShapeLike], kwargs: KwArgs, count: int = 1
    ) -> CoreOpExecutor:
        op = self.make_executor(is_gpu, shapes, kwargs)
        for _ in range(count):
            op.execute()
        if op.has_backward():
            for _ in range(count):
                op.execute_backward()
        op.synchronize()
        return op

    def timing_test(
        self,
        label: str,
        *,
        is_gpu: bool,
        stochastic: bool,
        kwargs: KwArgs,
        dim: int = 0,
        count: int = 1,
        timing_shapes: Sequence[ShapeLike] = (),
        backward: bool = True,
    ) -> dict[str, Any]:
        outer, calls = self.session.settings.iterations(count)
        fixed = [as_shape(s) for s in timing_shapes]

        header = f"Timing: {outer} iterations of {calls} calls"
        if fixed:
            header += f", shape = {fixed[0]}"
        print(header)

        instrument = TimingInstrument()
        op: CoreOpExecutor | None = None
        used_shapes: list[Shape] = fixed
        for _ in range(outer):
            if fixed:
                if op is None:
                    op = self.make_executor(is_gpu, fixed, kwargs)
            else:
                used_shapes = [generate_timing_shape(self._rng, stochastic=stochastic, dim=dim)]
                op = self.make_executor(is_gpu, used_shapes, kwargs)

            op.synchronize()
            instrument.start("Forward")
            for _ in range(calls):
                op.execute()
            op.synchronize()
            instrument.stop("Forward", calls)

            if backward and op.has_backward():
                instrument.start("Backward")
                for _ in range(calls):
                    op.execute_backward()
                op.synchronize()
                instrument.stop("Backward", calls)

        print(instrument.format(label))

        fwd = instrument.stats("Forward")
        bwd = instrument.stats("Backward")
        op_kwargs = {k: v for k, v in kwargs.items() if k not in (FWD_OP_NAME_KEY, BWD_OP_NAME_KEY)}
        record: dict[str, Any] = {
            "label": label,
            "operator": {
                "name": str(kwargs.get(FWD_OP_NAME_KEY, "")),
                "backward": None if op is None else op.backward_op_name,
                "kwargs": dict(sorted(op_kwargs.items())),
            },
            "device": "gpu" if is_gpu else "cpu",
            "dtype": self.session.settings.dtype,
            "shapes": [list(s.dims) for s in (op.input_shapes if op is not None else used_shapes)],
            "stochastic": stochastic,
            "iterations": {"outer": outer, "calls": calls},
            "timing": {
                "forward": None if fwd is None else fwd.to_dict(),
                "backward": None if bwd is None else bwd.to_dict(),
            },
            "profiling": None,
        }
        self.session.add_record(record)
        return record


def run_core_op_bidirectional(
    is_gpu: bool,
    op_kwargs: KwArgs,
    op_name: str,
    backward_op_name: str = "",
    *,
    session: BenchSession,
) -> CoreOpExecutor:
    """Correctness run of one operator on a small fixed shape, forward then backward."""
    runner = CoreOperatorRunner(session)
    op = runner.make_executor(
        is_gpu, [BIDIRECTIONAL_SHAPE], CoreOpExecutor.args_with_op_name(op_kwargs, op_name, backward_op_name)
    )

    op.print_tensors("inputs", op.inputs())
    op.print_tensors("outputs", op.outputs())
    op.execute()
    op.print_tensors("outputs", op.outputs())
    if op.has_backward():
        op.print_tensors("bwd_inputs", op.bwd_inputs())
        op.print_tensors("bwd_outputs", op.bwd_outputs())
        op.execute_backward()
        op.print_tensors("bwd_outputs", op.bwd_outputs())
    op.synchronize()
    return op


def run_core_op_timing_test(
    is_gpu: bool,
    op_kwargs: KwArgs,
    op_name: str,
    backward_op_name: str = "",
    *,
    session: BenchSession,
) -> list[dict[str, Any]]:
    kwargs = CoreOpExecutor.args_with_op_name(op_kwargs, op_name, backward_op_name)
    runner = CoreOperatorRunner(session)

    # Prime code and caches before the performance runs.
    runner.run_bidirectional(is_gpu, [PRIME_SHAPE], kwargs, 1)

    label = f"{op_name} Operator {pu_name(is_gpu)}"
    records: list[dict[str, Any]] = []
    for shape in timing_shapes(performance_run=session.settings.performance_run):
        records.append(
            runner.timing_test(
                label,
                is_gpu=is_gpu,
                stochastic=False,
                kwargs=kwargs,
                dim=TIMING_DIM,
                count=TIMING_CALLS,
                timing_shapes=[shape],
            )
        )
    return records


def run_fc_timing_test(
    is_gpu: bool,
    op_kwargs: KwArgs,
    op_name: str,
    backward_op_name: str = "",
    *,
    session: BenchSession,
) -> list[dict[str, Any]]:
    kwargs = CoreOpExecutor.args_with_op_name(op_kwargs, op_name, backward_op_name)
    runner = CoreOperatorRunner(session)

    runner.run_bidirectional(is_gpu, list(FC_PRIME_SHAPES), kwargs, 1)

    label = f"{op_name} Operator {pu_name(is_gpu)}"
    records: list[dict[str, Any]] = []
    for data_shape, weight_shape in fc_timing_shape_pairs(performance_run=session.settings.performance_run):
        records.append(
            runner.timing_test(
                label,
                is_gpu=is_gpu,
                stochastic=False,
                kwargs=kwargs,
                dim=TIMING_DIM,
                count=TIMING_CALLS,
                timing_shapes=[data_shape, weight_shape],
            )
        )
    return records
