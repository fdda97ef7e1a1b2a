from __future__ import annotations

import cProfile
import io
import pstats
import sys
from pathlib import Path

from .config import RunSettings
from .devices import gpu_available
from .export import load_results, validate_results_schema, write_results
from .runner import BenchSession
from .suites import PerfCase, iter_cases, run_case

# Rows of the cumulative-time table written next to each profile.
STATS_TOP_N = 40


def profile_case(case: PerfCase, *, settings: RunSettings, case_dir: Path) -> dict[str, str]:
    """Run one case under cProfile; write `profile.prof` and a `stats.txt` table."""
    case_dir.mkdir(parents=True, exist_ok=True)
    prof_path = case_dir / "profile.prof"
    stats_path = case_dir / "stats.txt"

    session = BenchSession(settings=settings)
    profiler = cProfile.Profile()
    profiler.enable()
    try:
        run_case(case, session)
    finally:
        profiler.disable()
        profiler.dump_stats(str(prof_path))

    buf = io.StringIO()
    pstats.Stats(profiler, stream=buf).sort_stats("cumulative").print_stats(STATS_TOP_N)
    stats_path.write_text(buf.getvalue())
    return {"trace": str(prof_path), "table": str(stats_path)}


def profile_run(*, out_dir: Path, case_filter: str, settings: RunSettings) -> int:
    results_path = out_dir / "results.json"
    if not results_path.exists():
        raise FileNotFoundError(f"Missing results.json at {results_path}")

    results = load_results(results_path)
    profiles_dir = out_dir / "profiles"
    profiles_dir.mkdir(parents=True, exist_ok=True)

    failures: list[str] = []
    has_gpu = gpu_available()
    for case in iter_cases(case_filter):
        if case.requires_gpu and not has_gpu:
            print(f"[ SKIPPED  ] {case.case_id} (CUDA not available)")
            continue
        case_dir = profiles_dir / case.suite / case.name
        try:
            artifacts = profile_case(case, settings=settings, case_dir=case_dir)
        except Exception as e:
            failures.append(f"{case.case_id}: {type(e).__name__}: {e}")
            print(f"[  FAILED  ] {case.case_id}: {e}", file=sys.stderr)
            continue

        rel = {k: str(Path(v).relative_to(out_dir)) if Path(v).is_relative_to(out_dir) else v for k, v in artifacts.items()}
        for rec in results.get("records", []):
            if rec.get("suite") == case.suite and rec.get("case") == case.name:
                rec["profiling"] = rel

    validate_results_schema(results)
    write_results(results_path, results)
    return 0 if not failures else 1
