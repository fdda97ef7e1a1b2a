from __future__ import annotations

import json
import platform
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np
from jsonschema import Draft202012Validator

from .config import RunSettings
from .devices import gpu_device_info
from .suites import CaseOutcome

SCHEMA_VERSION = "0.1.0"


def find_repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_results_schema_path() -> Path:
    return Path(__file__).resolve().parent / "results.schema.json"


def validate_results_schema(results: dict[str, Any], *, schema_path: Path | None = None) -> None:
    schema_path = _default_results_schema_path() if schema_path is None else schema_path
    schema = json.loads(schema_path.read_text())
    Draft202012Validator(schema).validate(results)


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def git_info(repo_root: Path) -> dict[str, Any]:
    def _run(cmd: list[str]) -> str:
        out = subprocess.check_output(cmd, cwd=repo_root, stderr=subprocess.DEVNULL)
        return out.decode().strip()

    try:
        branch = _run(["git", "branch", "--show-current"])
        commit = _run(["git", "rev-parse", "HEAD"])
        dirty = bool(_run(["git", "status", "--porcelain=v1"]))
        return {"branch": branch, "commit": commit, "dirty": dirty}
    except (OSError, subprocess.CalledProcessError):
        return {"branch": "unknown", "commit": "unknown", "dirty": False}


def environment_info() -> dict[str, Any]:
    return {
        "platform": {"os": platform.system().lower(), "arch": platform.machine().lower()},
        "python": platform.python_version(),
        "numpy": str(np.__version__),
        "gpu": gpu_device_info(),
    }


def record_key(rec: dict[str, Any]) -> tuple:
    op = rec.get("operator", {}) or {}
    kwargs = op.get("kwargs", {}) or {}
    return (
        rec.get("suite"),
        rec.get("case"),
        rec.get("label"),
        str(op.get("name", "")),
        tuple(sorted((str(k), str(v)) for k, v in kwargs.items())),
        rec.get("device"),
        rec.get("dtype"),
        tuple(tuple(int(d) for d in s) for s in rec.get("shapes", []) or []),
    )


def _status_from_outcome(outcome: dict[str, Any]) -> tuple[str, str]:
    failed = outcome.get("failed", {}) or {}
    if failed:
        return "fail", f"{len(failed)} case(s) failed: {', '.join(sorted(failed))}"
    return "pass", ""


def build_results(
    *,
    records: list[dict[str, Any]],
    outcome: CaseOutcome,
    settings: RunSettings,
    started_at: str,
    artifacts_dir: Path,
    case_filter: str,
) -> dict[str, Any]:
    git = git_info(find_repo_root())
    outcome_obj = outcome.to_dict()
    status, failure_reason = _status_from_outcome(outcome_obj)
    run_obj = {
        "run_id": started_at.replace(":", "-"),
        "started_at": started_at,
        "finished_at": now_rfc3339(),
        "status": status,
        "failure_reason": failure_reason,
        "git": git,
        "environment": environment_info(),
        "settings": {**settings.to_dict(), "filter": case_filter},
        "cases": outcome_obj,
        "artifacts_dir": str(artifacts_dir),
    }
    out = {"schema_version": SCHEMA_VERSION, "run": run_obj, "records": records}
    validate_results_schema(out)
    return out


def merge_results(existing: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    merged = dict(existing)
    merged_run = dict(existing.get("run", {}))

    # Keep the original started_at; everything describing the latest run is taken from `new`.
    new_run = new.get("run", {})
    for k in ("finished_at", "artifacts_dir", "git", "environment", "settings"):
        if k in new_run:
            merged_run[k] = new_run[k]

    old_cases = merged_run.get("cases", {}) or {}
    new_cases = new_run.get("cases", {}) or {}
    passed = dict.fromkeys(old_cases.get("passed", []) or [])
    failed = dict(old_cases.get("failed", {}) or {})
    skipped = dict(old_cases.get("skipped", {}) or {})
    # A rerun case replaces its previous outcome.
    for case_id in new_cases.get("passed", []) or []:
        failed.pop(case_id, None)
        skipped.pop(case_id, None)
        passed[case_id] = None
    for case_id, reason in (new_cases.get("failed", {}) or {}).items():
        passed.pop(case_id, None)
        skipped.pop(case_id, None)
        failed[case_id] = reason
    for case_id, reason in (new_cases.get("skipped", {}) or {}).items():
        if case_id not in passed and case_id not in failed:
            skipped[case_id] = reason
    merged_run["cases"] = {"passed": list(passed), "failed": failed, "skipped": skipped}

    by_key: dict[tuple, dict[str, Any]] = {}
    for r in existing.get("records", []) or []:
        by_key[record_key(r)] = r
    for r in new.get("records", []) or []:
        by_key[record_key(r)] = r
    merged["records"] = list(by_key.values())

    # Run status is derived from the merged outcomes, never preserved.
    merged_run["status"], merged_run["failure_reason"] = _status_from_outcome(merged_run["cases"])
    merged["run"] = merged_run
    merged["schema_version"] = new.get("schema_version", SCHEMA_VERSION)
    validate_results_schema(merged)
    return merged


def load_results(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


def write_results(path: Path, results: dict[str, Any]) -> None:
    path.write_text(json.dumps(results, indent=2, sort_keys=True) + "\n")
