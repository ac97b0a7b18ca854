# conditions.py
"""
Trigger predicates.

A job's `when` is a Condition evaluated once all of its dependencies are
terminal. Conditions only see typed upstream statuses and the Trigger of the
Run, never "everything that ran so far":

    success() & on_branch("master")
    always()
    failure() | on_event("schedule")
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from .model import JobStatus, Trigger


@dataclass(frozen=True)
class ConditionContext:
    trigger: Trigger
    # every declared dependency (needs + after) -> its terminal status
    upstream: Mapping[str, JobStatus]


class Condition:
    def __init__(self, fn: Callable[[ConditionContext], bool], description: str):
        self._fn = fn
        self.description = description

    def __call__(self, ctx: ConditionContext) -> bool:
        return bool(self._fn(ctx))

    def __and__(self, other: "Condition") -> "Condition":
        return Condition(lambda c: self(c) and other(c), f"{self.description} && {other.description}")

    def __or__(self, other: "Condition") -> "Condition":
        return Condition(lambda c: self(c) or other(c), f"({self.description} || {other.description})")

    def __invert__(self) -> "Condition":
        return Condition(lambda c: not self(c), f"!{self.description}")

    def __repr__(self) -> str:
        return f"Condition({self.description})"


def success() -> Condition:
    """True when every declared dependency succeeded (vacuously true with none)."""
    return Condition(
        lambda c: all(s == JobStatus.SUCCEEDED for s in c.upstream.values()),
        "success()",
    )


def failure() -> Condition:
    return Condition(
        lambda c: any(s == JobStatus.FAILED for s in c.upstream.values()),
        "failure()",
    )


def always() -> Condition:
    return Condition(lambda c: True, "always()")


def on_branch(*branches: str) -> Condition:
    wanted = frozenset(b[len("refs/heads/"):] if b.startswith("refs/heads/") else b for b in branches)
    return Condition(
        lambda c: c.trigger.branch in wanted,
        f"branch in {sorted(wanted)}",
    )


def on_event(*events: str) -> Condition:
    wanted = frozenset(events)
    return Condition(lambda c: c.trigger.event in wanted, f"event in {sorted(wanted)}")


def all_of(*conditions: Condition) -> Condition:
    if not conditions:
        return always()
    out = conditions[0]
    for c in conditions[1:]:
        out = out & c
    return out
