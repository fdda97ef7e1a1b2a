from __future__ import annotations

import fnmatch
import sys
import traceback
from collections.abc import Callable, Iterable

import attrs

from .devices import gpu_available
from .executor import BWD_OP_NAME_NONE
from .runner import BenchSession, run_core_op_bidirectional, run_core_op_timing_test, run_fc_timing_test

CaseFn = Callable[[BenchSession], None]


@attrs.define(frozen=True, slots=True)
class PerfCase:
    suite: str
    name: str
    fn: CaseFn
    requires_gpu: bool = False

    @property
    def case_id(self) -> str:
        return f"{self.suite}.{self.name}"


@attrs.define(slots=True)
class CaseOutcome:
    passed: list[str] = attrs.field(factory=list)
    failed: dict[str, str] = attrs.field(factory=dict)
    skipped: dict[str, str] = attrs.field(factory=dict)

    @property
    def status(self) -> str:
        return "fail" if self.failed else "pass"

    def to_dict(self) -> dict[str, object]:
        return {"passed": list(self.passed), "failed": dict(self.failed), "skipped": dict(self.skipped)}


SGD_NEGATIVE_CLIP = {"lr": "0.01", "clip_gradient": "-1"}
SGD_POSITIVE_CLIP = {"lr": "0.01", "clip_gradient": "1"}
ACT_TANH = {"act_type": "tanh"}
FC_NO_BIAS_250 = {"no_bias": "true", "num_hidden": "250"}


def _sgdmom_bidirectional(session: BenchSession) -> None:
    print("NEGATIVE CLIP GRADIENT")
    run_core_op_bidirectional(False, SGD_NEGATIVE_CLIP, "sgd_mom_update", BWD_OP_NAME_NONE, session=session)
    print("POSITIVE CLIP GRADIENT")
    run_core_op_bidirectional(False, SGD_POSITIVE_CLIP, "sgd_mom_update", BWD_OP_NAME_NONE, session=session)


def _sgdmom_timing(is_gpu: bool) -> CaseFn:
    def run(session: BenchSession) -> None:
        print("NEGATIVE CLIP GRADIENT")
        run_core_op_timing_test(is_gpu, SGD_NEGATIVE_CLIP, "sgd_mom_update", BWD_OP_NAME_NONE, session=session)
        print("POSITIVE CLIP GRADIENT")
        run_core_op_timing_test(is_gpu, SGD_POSITIVE_CLIP, "sgd_mom_update", BWD_OP_NAME_NONE, session=session)

    return run


def _act_timing(is_gpu: bool) -> CaseFn:
    def run(session: BenchSession) -> None:
        print("Activation with tanh")
        run_core_op_timing_test(is_gpu, ACT_TANH, "Activation", BWD_OP_NAME_NONE, session=session)

    return run


def _fc_timing(is_gpu: bool) -> CaseFn:
    def run(session: BenchSession) -> None:
        print("FullyConnected")
        run_fc_timing_test(is_gpu, FC_NO_BIAS_250, "FullyConnected", BWD_OP_NAME_NONE, session=session)

    return run


CASES: tuple[PerfCase, ...] = (
    PerfCase("SGDMOM_PERF", "ExecuteBidirectional", _sgdmom_bidirectional),
    PerfCase("SGDMOM_PERF", "TimingCPU", _sgdmom_timing(False)),
    PerfCase("ACT_PERF", "TimingCPU", _act_timing(False)),
    PerfCase("FC_PERF", "TimingCPU", _fc_timing(False)),
    PerfCase("SGDMOM_PERF", "TimingGPU", _sgdmom_timing(True), requires_gpu=True),
    PerfCase("ACT_PERF", "TimingGPU", _act_timing(True), requires_gpu=True),
    PerfCase("FC_PERF", "TimingGPU", _fc_timing(True), requires_gpu=True),
)

SUITES: tuple[str, ...] = tuple(dict.fromkeys(c.suite for c in CASES))


def matches_filter(case_id: str, pattern: str) -> bool:
    """gtest-style filter: `POS1:POS2-NEG1:NEG2`, glob patterns on `SUITE.CASE`."""
    positive, _, negative = pattern.partition("-")
    pos = [p for p in positive.split(":") if p] or ["*"]
    neg = [p for p in negative.split(":") if p]
    if not any(fnmatch.fnmatchcase(case_id, p) for p in pos):
        return False
    return not any(fnmatch.fnmatchcase(case_id, p) for p in neg)


def iter_cases(pattern: str = "*") -> Iterable[PerfCase]:
    for c in CASES:
        if matches_filter(c.case_id, pattern):
            yield c


def get_case(case_id: str) -> PerfCase:
    for c in CASES:
        if c.case_id == case_id:
            return c
    raise KeyError(f"Unknown case={case_id!r}. Known: {[c.case_id for c in CASES]}")


def run_case(case: PerfCase, session: BenchSession) -> None:
    session.begin_case(case.suite, case.name)
    case.fn(session)


def run_cases(cases: Iterable[PerfCase], session: BenchSession) -> CaseOutcome:
    """Run cases sequentially; a raising case is recorded as failed and the run continues."""
    outcome = CaseOutcome()
    has_gpu = gpu_available()
    for case in cases:
        if case.requires_gpu and not has_gpu:
            outcome.skipped[case.case_id] = "CUDA not available"
            print(f"[ SKIPPED  ] {case.case_id} (CUDA not available)")
            continue
        print(f"[ RUN      ] {case.case_id}")
        try:
            run_case(case, session)
        except Exception as e:
            outcome.failed[case.case_id] = f"{type(e).__name__}: {e}"
            traceback.print_exc(file=sys.stderr)
            print(f"[  FAILED  ] {case.case_id}: {e}", file=sys.stderr)
            continue
        outcome.passed.append(case.case_id)
        print(f"[       OK ] {case.case_id}")
    return outcome
