from __future__ import annotations

from pathlib import Path
from typing import Any

from .export import load_results

REPORT_TITLE = "Core Operator Timing Report"

TABLE_HEADER: list[str] = [
    "case",
    "label",
    "device",
    "dtype",
    "shapes",
    "kwargs",
    "calls",
    "fwd_mean_ms",
    "fwd_total_ms",
    "bwd_mean_ms",
]


def _format_float(v: float | None) -> str:
    if v is None:
        return "NA"
    return f"{v:.4f}"


def _format_shapes(shapes: list[list[int]]) -> str:
    return " ".join("x".join(str(d) for d in s) for s in shapes) or "NA"


def _format_kwargs(kwargs: dict[str, str]) -> str:
    return ", ".join(f"{k}={v}" for k, v in sorted(kwargs.items()))


def _stat(rec: dict[str, Any], pass_name: str, field: str) -> float | None:
    stats = (rec.get("timing", {}) or {}).get(pass_name)
    if not isinstance(stats, dict):
        return None
    v = stats.get(field)
    return float(v) if isinstance(v, (int, float)) else None


def _record_row(rec: dict[str, Any]) -> list[str]:
    op = rec.get("operator", {}) or {}
    fwd = (rec.get("timing", {}) or {}).get("forward") or {}
    return [
        str(rec.get("case", "")),
        str(rec.get("label", "")),
        str(rec.get("device", "")),
        str(rec.get("dtype", "")),
        f"`{_format_shapes(rec.get('shapes', []) or [])}`",
        f"`{_format_kwargs(op.get('kwargs', {}) or {})}`",
        str(fwd.get("calls", "NA")),
        _format_float(_stat(rec, "forward", "mean_ms")),
        _format_float(_stat(rec, "forward", "total_ms")),
        _format_float(_stat(rec, "backward", "mean_ms")),
    ]


def generate_report(results: dict[str, Any]) -> str:
    lines: list[str] = []
    lines.append(f"# {REPORT_TITLE}")
    lines.append("")
    run = results.get("run", {}) or {}
    git = run.get("git", {}) or {}
    settings = run.get("settings", {}) or {}
    lines.append(f"- Branch: `{git.get('branch', '')}`")
    lines.append(f"- Commit: `{git.get('commit', '')}`")
    lines.append(f"- Status: `{run.get('status', '')}`")
    lines.append(f"- Performance run: `{settings.get('performance_run', '')}`")
    lines.append(f"- Quick test: `{settings.get('quick_test', '')}`")
    lines.append("")

    cases = run.get("cases", {}) or {}
    failed = cases.get("failed", {}) or {}
    skipped = cases.get("skipped", {}) or {}
    if failed or skipped:
        lines.append("## Case Outcomes")
        lines.append("")
        for case_id, reason in sorted(failed.items()):
            lines.append(f"- FAILED `{case_id}`: {reason}")
        for case_id, reason in sorted(skipped.items()):
            lines.append(f"- SKIPPED `{case_id}`: {reason}")
        lines.append("")

    by_suite: dict[str, list[dict[str, Any]]] = {}
    for r in results.get("records", []) or []:
        by_suite.setdefault(str(r.get("suite", "")), []).append(r)

    for suite, recs in by_suite.items():
        lines.append(f"## {suite}")
        lines.append("")
        lines.append("| " + " | ".join(TABLE_HEADER) + " |")
        lines.append("|" + "|".join(["---"] * len(TABLE_HEADER)) + "|")
        for r in recs:
            lines.append("| " + " | ".join(_record_row(r)) + " |")
        lines.append("")

    lines.append("## Column Definitions")
    lines.append("")
    lines.append("- `label`: Timing label `<operator> Operator CPU|GPU`.")
    lines.append("- `shapes`: Input shapes of the timed operator instance (inferred inputs included).")
    lines.append("- `kwargs`: Operator keyword arguments as passed by the case.")
    lines.append("- `calls`: Total timed forward calls (outer iterations x calls per iteration).")
    lines.append("- `fwd_mean_ms` / `bwd_mean_ms`: Mean wall time per call in milliseconds.")
    lines.append("- `fwd_total_ms`: Sum of all timed forward batches in milliseconds.")
    lines.append("")
    lines.append("Notes:")
    lines.append("- `NA` means the value is missing (e.g., the case has no backward pass).")
    lines.append("")

    return "\n".join(lines)


def report_run(*, out_dir: Path) -> int:
    results_path = out_dir / "results.json"
    if not results_path.exists():
        raise FileNotFoundError(f"Missing results.json at {results_path}")

    results = load_results(results_path)
    (out_dir / "report.md").write_text(generate_report(results) + "\n")
    return 0
