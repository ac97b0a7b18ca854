# runlog.py
"""
Per-job log capture and per-Run retention.

Job output never goes to the console while a Run is in flight (several jobs
write at once). Each job gets a JobLog; once the Run is over RunStore keeps

    <runs_dir>/<run_id>/summary.json
    <runs_dir>/<run_id>/<job>.log

so logs stay retrievable whatever the Run's outcome was.
"""
from __future__ import annotations

import dataclasses
import json
import re
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .model import RunResult

DEFAULT_RUNS_DIR = ".relayci/runs"


class JobLog:
    """Thread-safe line buffer for one job's combined output."""

    def __init__(self, job: str):
        self.job = job
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._lines.extend(text.rstrip("\n").split("\n"))

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines) + ("\n" if self._lines else "")

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _jsonable(dataclasses.asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def run_summary(run: RunResult) -> Dict[str, Any]:
    jobs: Dict[str, Any] = {}
    for name, r in run.results.items():
        jobs[name] = {
            "status": r.status.value,
            "skip_cause": r.skip_cause.value if r.skip_cause else None,
            "label": r.label,
            "error": None if r.error is None else {
                "kind": r.error.kind,
                "message": r.error.message,
                "step": r.error.step,
                "details": _jsonable(r.error.details),
            },
            "cached": r.cached,
            "started_at": r.started_at,
            "finished_at": r.finished_at,
            "duration_s": r.duration,
            "artifacts": _jsonable(r.artifacts),
            "details": _jsonable(r.details),
        }
    return {
        "run_id": run.run_id,
        "status": run.status,
        "trigger": _jsonable(run.trigger),
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "fatal": None if run.fatal is None else str(run.fatal),
        "cancelled": run.cancelled,
        "jobs": jobs,
    }


class RunStore:
    def __init__(self, root: str | Path = DEFAULT_RUNS_DIR):
        self.root = Path(root).resolve()

    def run_dir(self, run_id: str) -> Path:
        return self.root / _safe_name(run_id)

    def save(self, run: RunResult) -> Path:
        d = self.run_dir(run.run_id)
        d.mkdir(parents=True, exist_ok=True)
        for name, r in run.results.items():
            (d / f"{_safe_name(name)}.log").write_text(r.log, encoding="utf-8")
        (d / "summary.json").write_text(
            json.dumps(run_summary(run), sort_keys=True, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        return d

    def load_summary(self, run_id: str) -> Dict[str, Any]:
        path = self.run_dir(run_id) / "summary.json"
        if not path.exists():
            raise FileNotFoundError(f"No retained run '{run_id}' under {self.root}")
        return json.loads(path.read_text(encoding="utf-8"))

    def load_log(self, run_id: str, job: str) -> str:
        path = self.run_dir(run_id) / f"{_safe_name(job)}.log"
        if not path.exists():
            raise FileNotFoundError(f"No log for job '{job}' in run '{run_id}'")
        return path.read_text(encoding="utf-8")

    def list_runs(self) -> List[str]:
        if not self.root.exists():
            return []
        dirs = [p for p in self.root.iterdir() if (p / "summary.json").exists()]
        return [p.name for p in sorted(dirs, key=lambda p: (p / "summary.json").stat().st_mtime)]

    def latest(self) -> Optional[str]:
        runs = self.list_runs()
        return runs[-1] if runs else None
