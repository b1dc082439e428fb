# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-page state timer.

Owned by the page state machine rather than its driver task, so the totals
survive cancellation of that task and the give-up report can still tell how
long the page sat in the state it was stuck in.
"""

from __future__ import annotations

import time


def _ms(ns: int) -> float:
    return round(ns / 1e6, 1)


class StateTimer:
    """Accumulate time spent in each page state."""

    __slots__ = ("_totals", "_current", "_entered_ns", "_created_ns")

    def __init__(self) -> None:
        self._totals: dict[str, int] = {}
        self._current: str | None = None
        self._entered_ns = 0
        self._created_ns = time.monotonic_ns()

    def enter(self, name: str) -> None:
        """Leave the current state (if any) and start timing ``name``."""
        now = time.monotonic_ns()
        self._leave(now)
        self._current = name
        self._entered_ns = now

    def finalize(self) -> None:
        """Stop timing. Safe to call more than once."""
        self._leave(time.monotonic_ns())
        self._current = None

    def _leave(self, now: int) -> None:
        if self._current is not None:
            self._totals[self._current] = self._totals.get(self._current, 0) + now - self._entered_ns

    @property
    def current_state(self) -> str | None:
        return self._current

    def elapsed_per_state(self) -> dict[str, float]:
        """{state: ms}, in first-entered order. Re-entered states accumulate; the running state is included."""
        totals = dict(self._totals)
        if self._current is not None:
            totals[self._current] = totals.get(self._current, 0) + time.monotonic_ns() - self._entered_ns
        return {name: _ms(ns) for name, ns in totals.items()}

    def timeout_report(self) -> dict:
        """Where a page was when it gave up, and how long each state took."""
        now = time.monotonic_ns()
        return {
            "error": "give_up",
            "gave_up_in": self._current or "unknown",
            "gave_up_state_ms": _ms(now - self._entered_ns) if self._current is not None else 0,
            "total_ms": _ms(now - self._created_ns),
            "states": self.elapsed_per_state(),
        }
