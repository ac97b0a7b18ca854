# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_RUNS_DIR = ".relayci/runs"
DEFAULT_PROTECTED_BRANCHES = "master,main"


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    cache_dir: str = DEFAULT_CACHE_DIR
    runs_dir: str = DEFAULT_RUNS_DIR
    workers: Optional[int] = None
    protected_branches: List[str] = field(default_factory=lambda: _split(DEFAULT_PROTECTED_BRANCHES))
    debug: bool = False
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("RELAYCI_WORKERS")
        return cls(
            cache_dir=env.get("RELAYCI_CACHE_DIR", DEFAULT_CACHE_DIR),
            runs_dir=env.get("RELAYCI_RUNS_DIR", DEFAULT_RUNS_DIR),
            workers=int(workers) if workers else None,
            protected_branches=_split(env.get("RELAYCI_PROTECTED_BRANCHES", DEFAULT_PROTECTED_BRANCHES)),
            debug=_flag(env.get("RELAYCI_DEBUG")),
            registry_username=env.get("RELAYCI_REGISTRY_USERNAME"),
            registry_password=env.get("RELAYCI_REGISTRY_PASSWORD"),
        )
