from __future__ import annotations

import argparse
from pathlib import Path

from .bench import timing_run
from .config import DTYPES, settings_from_env
from .profiling import profile_run
from .report import report_run
from .suites import iter_cases


def _abs_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def _add_settings_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--filter", default="*", help="gtest-style case filter, e.g. 'FC_PERF.*:ACT_PERF.*-*GPU'.")
    p.add_argument(
        "--performance",
        action="store_true",
        default=None,
        help="Use the full performance shape lists (env: COREOP_PERF_PERFORMANCE_RUN).",
    )
    p.add_argument(
        "--quick",
        action="store_true",
        default=None,
        help="Quick test: 2 outer iterations of 1 call (env: COREOP_PERF_QUICK_TEST).",
    )
    p.add_argument(
        "--verbose", action="store_true", default=None, help="Print operator arrays (env: COREOP_PERF_VERBOSE)."
    )
    p.add_argument("--dtype", default=None, choices=sorted(DTYPES))
    p.add_argument("--seed", type=int, default=None, help="Input/shape RNG seed (env: COREOP_PERF_SEED).")
    p.add_argument("--outer-iterations", type=int, default=None, help="Override timing outer iterations.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coreop_perf.operator_bench",
        description="Core operator performance harness (Activation, sgd_mom_update, FullyConnected).",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    lst = sub.add_parser("list", help="List registered cases.")
    lst.add_argument("--filter", default="*", help="gtest-style case filter.")

    run = sub.add_parser("run", help="Run cases and write results.json + report.md.")
    run.add_argument("--out-dir", type=_abs_path, required=True)
    _add_settings_args(run)

    report = sub.add_parser("report", help="Generate report.md from results.json (no operator runs).")
    report.add_argument("--out-dir", type=_abs_path, required=True)

    profile = sub.add_parser("profile", help="Run cases under cProfile and attach profiles to results.json.")
    profile.add_argument("--out-dir", type=_abs_path, required=True)
    _add_settings_args(profile)

    return parser


def _settings(ns: argparse.Namespace):
    return settings_from_env(
        performance_run=ns.performance,
        quick_test=ns.quick,
        verbose=ns.verbose,
        dtype=ns.dtype,
        seed=ns.seed,
        outer_iterations=ns.outer_iterations,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    if ns.cmd == "list":
        for c in iter_cases(ns.filter):
            print(f"{c.case_id}{' [gpu]' if c.requires_gpu else ''}")
        return 0
    if ns.cmd == "run":
        return timing_run(out_dir=ns.out_dir, case_filter=ns.filter, settings=_settings(ns))
    if ns.cmd == "report":
        return report_run(out_dir=ns.out_dir)
    if ns.cmd == "profile":
        return profile_run(out_dir=ns.out_dir, case_filter=ns.filter, settings=_settings(ns))

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
