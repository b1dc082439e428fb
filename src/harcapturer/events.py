# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Capture lifecycle events and sinks.

Ordering per run: ``connect`` → per page ``pageStart`` then exactly one of
``pageEnd`` / ``pageError`` → ``end(report)``. ``error`` may arrive at any
point and is terminal.

Sinks are supplied by the caller: CallbackSink (observer callbacks),
RecordingSink (keeps everything, for tests and summaries), NullSink.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CONNECT = "connect"
PAGE_START = "pageStart"
PAGE_END = "pageEnd"
PAGE_ERROR = "pageError"
ERROR = "error"
END = "end"

ALL_EVENTS: frozenset[str] = frozenset({CONNECT, PAGE_START, PAGE_END, PAGE_ERROR, ERROR, END})


class EventSink(Protocol):
    """Receives the capturer's lifecycle events."""

    def emit(self, event: str, *args: Any) -> None: ...


def _check_event(event: str) -> None:
    if event not in ALL_EVENTS:
        raise ValueError(f"Unknown capture event: {event!r}")


class CallbackSink:
    """Dispatch events to registered callbacks.

    A failing callback is logged and does not interrupt the capture run.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, callback: Callable[..., Any]) -> CallbackSink:
        _check_event(event)
        self._callbacks[event].append(callback)
        return self

    def emit(self, event: str, *args: Any) -> None:
        _check_event(event)
        for callback in list(self._callbacks.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.warning("Callback for %r event failed", event, exc_info=True)


class RecordingSink:
    """Keep every emitted event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []

    def emit(self, event: str, *args: Any) -> None:
        _check_event(event)
        self.events.append((event, args))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.events if name == event]


class NullSink:
    """Discard all events."""

    def emit(self, event: str, *args: Any) -> None:
        _check_event(event)
