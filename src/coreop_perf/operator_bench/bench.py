from __future__ import annotations

from pathlib import Path

from .config import RunSettings
from .export import build_results, load_results, merge_results, now_rfc3339, write_results
from .report import report_run
from .runner import BenchSession
from .suites import iter_cases, run_cases


def timing_run(*, out_dir: Path, case_filter: str, settings: RunSettings) -> int:
    """Run the selected cases, write/merge `results.json` and regenerate `report.md`.

    Returns 0 when every executed case passed, 1 otherwise.
    """
    out_dir.mkdir(parents=True, exist_ok=True)

    cases = list(iter_cases(case_filter))
    if not cases:
        raise KeyError(f"No cases match filter={case_filter!r}")

    started_at = now_rfc3339()
    session = BenchSession(settings=settings)
    outcome = run_cases(cases, session)

    results = build_results(
        records=session.records,
        outcome=outcome,
        settings=settings,
        started_at=started_at,
        artifacts_dir=out_dir,
        case_filter=case_filter,
    )
    results_path = out_dir / "results.json"
    if results_path.exists():
        results = merge_results(load_results(results_path), results)
    write_results(results_path, results)
    report_run(out_dir=out_dir)

    print(
        f"[==========] {len(outcome.passed)} passed, {len(outcome.failed)} failed, "
        f"{len(outcome.skipped)} skipped; results: {results_path}"
    )
    return 0 if results["run"]["status"] == "pass" else 1
