# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HAR capturer: sequential page-load measurement over the Chrome DevTools Protocol.

Drives one browser tab through an ordered list of URLs, one page at a time:
- resets the tab to about:blank and closes leftover connections
- navigates, observes network/lifecycle events until the load settles
- captures navigation + resource timing from the page
- assembles every page into an HTTP Archive (HAR 1.2) report
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import ExtractionError, RecordFrozenError

if TYPE_CHECKING:
    from .page_tracker import PageActivityTracker

__version__ = "0.4.0"


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Navigation timing + resource timing captured from one page."""

    timing: dict[str, Any]  # performance.timing
    entries: list[dict[str, Any]] = field(default_factory=list)  # performance.getEntries()

    @classmethod
    def from_json(cls, text: str | None) -> PerformanceSnapshot:
        """Parse the JSON string returned by the in-page extraction script."""
        if not text:
            raise ExtractionError("Empty performance payload")
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ExtractionError(f"Malformed performance payload: {exc}") from exc
        if not isinstance(data, dict):
            raise ExtractionError(f"Performance payload is not an object: {type(data).__name__}")
        timing = data.get("timing") or {}
        entries = data.get("entries") or []
        if not isinstance(timing, dict) or not isinstance(entries, list):
            raise ExtractionError("Performance payload has unexpected shape")
        return cls(timing=timing, entries=entries)

    @property
    def is_empty(self) -> bool:
        return not self.timing and not self.entries

    def to_dict(self) -> dict[str, Any]:
        return {"timing": self.timing, "entries": self.entries}


@dataclass
class PageRecord:
    """Everything measured for one target URL.

    Mutated only by the state machine driving that page; frozen once the
    page's outcome event has been emitted.
    """

    index: int
    url: str
    tracker: PageActivityTracker
    performance: PerformanceSnapshot | None = None
    state_timings: dict[str, float] = field(default_factory=dict)
    _frozen: bool = field(default=False, repr=False)

    @property
    def failed(self) -> bool:
        return self.tracker.is_failed()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def page_id(self) -> str:
        return f"page_{self.index}"

    def attach_performance(self, snapshot: PerformanceSnapshot) -> None:
        self._check_mutable()
        self.performance = snapshot

    def record_state_timings(self, timings: dict[str, float]) -> None:
        self._check_mutable()
        self.state_timings = dict(timings)

    def mark_as_failed(self) -> None:
        self._check_mutable()
        self.tracker.mark_as_failed()

    def freeze(self) -> None:
        self._frozen = True
        self.tracker.close()

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RecordFrozenError(f"Page record {self.index} ({self.url}) is frozen")
