from __future__ import annotations

import os
from collections.abc import Iterable, Sequence

import attrs
import numpy as np


def _to_dims(value: Iterable[int]) -> tuple[int, ...]:
    dims = tuple(int(d) for d in value)
    if any(d < 0 for d in dims):
        raise ValueError(f"Shape dimensions must be non-negative: {dims}")
    return dims


@attrs.define(frozen=True, slots=True)
class Shape:
    dims: tuple[int, ...] = attrs.field(converter=_to_dims)

    @staticmethod
    def of(*dims: int) -> "Shape":
        return Shape(dims)

    @property
    def ndim(self) -> int:
        return len(self.dims)

    @property
    def size(self) -> int:
        n = 1
        for d in self.dims:
            n *= d
        return n

    def to_axis_value(self) -> str:
        return "x".join(str(d) for d in self.dims)

    @staticmethod
    def from_axis_value(v: str) -> "Shape":
        parts = v.split("x")
        if not v or any(not p.isdigit() for p in parts):
            raise ValueError(f"Invalid shape axis value: {v!r}")
        return Shape(tuple(int(p) for p in parts))

    def __str__(self) -> str:
        return "(" + ",".join(str(d) for d in self.dims) + ")"


ShapeLike = Shape | Sequence[int]


def as_shape(value: ShapeLike) -> Shape:
    return value if isinstance(value, Shape) else Shape(tuple(value))


DTYPES: dict[str, np.dtype] = {
    "float16": np.dtype(np.float16),
    "float32": np.dtype(np.float32),
    "float64": np.dtype(np.float64),
}


def resolve_dtype(key: str) -> np.dtype:
    if key not in DTYPES:
        raise KeyError(f"Unknown dtype={key!r}. Known: {sorted(DTYPES)}")
    return DTYPES[key]


# Fixed shapes used by the correctness run and the cache-priming runs.
BIDIRECTIONAL_SHAPE = Shape.of(5, 5)
PRIME_SHAPE = Shape.of(20, 3, 128, 128)
FC_PRIME_SHAPES: tuple[Shape, Shape] = (Shape.of(1, 2, 64, 64), Shape.of(250, 8192))

# Each timing test runs this many outer iterations of `count` calls.
DEFAULT_OUTER_ITERATIONS = 50
QUICK_OUTER_ITERATIONS = 2

# Fixed dimensions for generated (non-stochastic) timing shapes.
TIMING_BATCH_SIZE = 128
TIMING_CHANNELS = 3
TIMING_DEPTH = 2
TIMING_HEIGHT = 64
TIMING_WIDTH = 64

# Upper bounds for stochastic timing shapes.
STOCHASTIC_BATCH_SIZE = 16
STOCHASTIC_CHANNELS = 3
STOCHASTIC_DEPTH = 4
STOCHASTIC_HW = 64


SHAPE_SETS: dict[str, list[Shape]] = {
    # Short list intended for default (non-performance) runs.
    "default": [
        Shape.of(1, 1, 28, 28),
        Shape.of(50, 3, 18, 32),
    ],
    "performance": [
        Shape.of(1, 1, 28, 28),
        Shape.of(1, 3, 28, 28),
        Shape.of(50, 1, 18, 32),
        Shape.of(50, 3, 18, 32),
        Shape.of(20, 3, 128, 128),
    ],
    # FullyConnected weights paired index-by-index with the data shapes above
    # (num_hidden=250, flattened feature count of the matching data shape).
    "fc_weight_default": [
        Shape.of(250, 784),
        Shape.of(250, 1728),
    ],
    "fc_weight_performance": [
        Shape.of(250, 784),
        Shape.of(250, 2352),
        Shape.of(250, 576),
        Shape.of(250, 1728),
        Shape.of(250, 49152),
    ],
}


def timing_shapes(*, performance_run: bool) -> list[Shape]:
    return list(SHAPE_SETS["performance" if performance_run else "default"])


def fc_timing_shape_pairs(*, performance_run: bool) -> list[tuple[Shape, Shape]]:
    data = SHAPE_SETS["performance" if performance_run else "default"]
    weight = SHAPE_SETS["fc_weight_performance" if performance_run else "fc_weight_default"]
    return pair_shapes(data, weight)


def pair_shapes(shapes1: Sequence[ShapeLike], shapes2: Sequence[ShapeLike]) -> list[tuple[Shape, Shape]]:
    if len(shapes1) != len(shapes2):
        raise ValueError(f"Paired shape lists differ in length: {len(shapes1)} vs {len(shapes2)}")
    return [(as_shape(a), as_shape(b)) for a, b in zip(shapes1, shapes2)]


def _env_flag(name: str) -> bool | None:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return None
    return v.strip().lower() in {"1", "true", "yes", "on"}


@attrs.define(frozen=True, slots=True)
class RunSettings:
    performance_run: bool = False
    quick_test: bool = False
    verbose: bool = False
    dtype: str = attrs.field(default="float32")
    seed: int = attrs.field(default=0, validator=attrs.validators.ge(0))
    # At least one timed batch per test.
    outer_iterations: int | None = attrs.field(
        default=None, validator=attrs.validators.optional(attrs.validators.ge(1))
    )

    @dtype.validator
    def _check_dtype(self, _attribute: attrs.Attribute, value: str) -> None:
        resolve_dtype(value)

    @property
    def np_dtype(self) -> np.dtype:
        return resolve_dtype(self.dtype)

    def iterations(self, count: int) -> tuple[int, int]:
        """Return (outer iterations, calls per iteration) for a timing test."""
        if self.quick_test:
            return QUICK_OUTER_ITERATIONS if self.outer_iterations is None else self.outer_iterations, 1
        outer = DEFAULT_OUTER_ITERATIONS if self.outer_iterations is None else self.outer_iterations
        return outer, count

    def to_dict(self) -> dict[str, object]:
        return {
            "performance_run": self.performance_run,
            "quick_test": self.quick_test,
            "verbose": self.verbose,
            "dtype": self.dtype,
            "seed": self.seed,
            "outer_iterations": self.outer_iterations,
        }


def settings_from_env(**overrides: object) -> RunSettings:
    """Build settings from COREOP_PERF_* environment variables.

    Explicit (non-None) keyword overrides win over the environment.
    """
    values: dict[str, object] = {}
    for field, env in (
        ("performance_run", "COREOP_PERF_PERFORMANCE_RUN"),
        ("quick_test", "COREOP_PERF_QUICK_TEST"),
        ("verbose", "COREOP_PERF_VERBOSE"),
    ):
        flag = _env_flag(env)
        if flag is not None:
            values[field] = flag
    seed = os.environ.get("COREOP_PERF_SEED")
    if seed:
        try:
            values["seed"] = int(seed)
        except ValueError as e:
            raise ValueError(f"COREOP_PERF_SEED must be an integer, got {seed!r}") from e
    for k, v in overrides.items():
        if v is not None:
            values[k] = v
    return RunSettings(**values)  # type: ignore[arg-type]
