# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-page navigation / measurement state machine.

    RESETTING → NAVIGATING → OBSERVING → EXTRACTING → DONE
         └──────────┴────────────┴───────────┴──────→ FAILED

One coroutine handler per state, each returning the next state. ``run()``
drives the handlers as a single task and races it against the page's outcome
future, which either the handlers (DONE/FAILED) or the give-up timer resolve.
Whoever resolves it first wins. Every exit path, fatal errors included, goes
through ``_teardown()``: timers cancelled, subscriptions closed.

Timers (asyncio TimerHandles on the running loop):
- give-up: armed before RESETTING when ``give_up_time`` is set
- on-load settle: armed once, on the first "finished" report
- inter-event: cancelled and re-armed on every "finished" report
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from . import PageRecord, PerformanceSnapshot
from .errors import CleanupScriptError, ExtractionError, NavigationError, ProtocolError
from .events import PAGE_END, PAGE_ERROR, PAGE_START
from .options import CaptureOptions
from .state_timer import StateTimer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .control_channel import ControlChannel, Subscription
    from .events import EventSink

logger = logging.getLogger(__name__)

NEUTRAL_URL = "about:blank"
CLEANUP_SCRIPT = "chrome.benchmarking.closeConnections();"
PERFORMANCE_SCRIPT = """(function () {
    return JSON.stringify({
        timing: performance.timing,
        entries: performance.getEntries()
    });
})()"""


class PageState(StrEnum):
    RESETTING = "resetting"
    NAVIGATING = "navigating"
    OBSERVING = "observing"
    EXTRACTING = "extracting"
    DONE = "done"
    FAILED = "failed"

    @property
    def give_up_hint(self) -> str:
        """Likely cause when the give-up timer fires in this state."""
        return _GIVE_UP_HINTS.get(self, f"Gave up while {self.value}.")


_GIVE_UP_HINTS = {
    PageState.RESETTING: "about:blank never stopped loading. The tab may be hung.",
    PageState.NAVIGATING: "Page.navigate did not return. The browser may be overloaded.",
    PageState.OBSERVING: "Load event never fired or requests stayed pending (long-polling, streaming).",
    PageState.EXTRACTING: "Performance snapshot or prepare script did not complete.",
}

TERMINAL_STATES = frozenset({PageState.DONE, PageState.FAILED})


def evaluation_error(response: dict[str, Any]) -> str | None:
    """Return the in-page exception text of a Runtime.evaluate reply, if any."""
    details = response.get("exceptionDetails")
    if details:
        exception = details.get("exception") or {}
        return exception.get("description") or details.get("text") or "exception thrown"
    if response.get("wasThrown"):
        result = response.get("result") or {}
        return result.get("description") or "exception thrown"
    return None


class PageStateMachine:
    """Load and measure one URL on an open control channel."""

    def __init__(
        self,
        record: PageRecord,
        channel: ControlChannel,
        options: CaptureOptions,
        sink: EventSink,
    ) -> None:
        self.record = record
        self.tracker = record.tracker
        self.channel = channel
        self.options = options
        self.sink = sink

        self._state = PageState.RESETTING
        self._timer = StateTimer()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._outcome: asyncio.Future[PageState] | None = None
        self._subscriptions: list[Subscription] = []
        self._reset_subscription: Subscription | None = None

        self._neutral_frame_id: str | None = None
        self._neutral_stopped = asyncio.Event()
        self._settled = asyncio.Event()
        self._finalized = False
        self._started = False
        self.settled_by: str | None = None

        self._give_up_handle: asyncio.TimerHandle | None = None
        self._load_handle: asyncio.TimerHandle | None = None
        self._last_response_handle: asyncio.TimerHandle | None = None

        self._handlers: dict[PageState, Callable[[], Awaitable[PageState]]] = {
            PageState.RESETTING: self._reset,
            PageState.NAVIGATING: self._navigate,
            PageState.OBSERVING: self._observe,
            PageState.EXTRACTING: self._extract,
        }

    @property
    def state(self) -> PageState:
        return self._state

    @property
    def finalized(self) -> bool:
        """True once the performance snapshot is captured; later events are dropped."""
        return self._finalized

    @property
    def timers_armed(self) -> bool:
        return any(h is not None for h in (self._give_up_handle, self._load_handle, self._last_response_handle))

    # ── Driver ──────────────────────────────────────────────────────

    async def run(self) -> PageState:
        """Process the page. Returns DONE or FAILED; raises CaptureError on fatal errors."""
        self._loop = asyncio.get_running_loop()
        self._outcome = self._loop.create_future()

        with structlog.contextvars.bound_contextvars(page_index=self.record.index, url=self.record.url):
            give_up = self.options.give_up_seconds
            if give_up:
                self._give_up_handle = self._loop.call_later(give_up, self._on_give_up)

            driver = asyncio.ensure_future(self._drive())
            try:
                await asyncio.wait({driver, self._outcome}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not driver.done():
                    driver.cancel()
                    with suppress(asyncio.CancelledError):
                        await driver
                self._teardown()

            if not driver.cancelled() and driver.exception() is not None:
                logger.debug("Fatal error in state %s", self._state)
                raise driver.exception()

            return self._finish(self._outcome.result())

    async def _drive(self) -> None:
        state = PageState.RESETTING
        while state not in TERMINAL_STATES:
            self._enter(state)
            state = await self._handlers[state]()
        self._resolve(state)

    def _enter(self, state: PageState) -> None:
        logger.debug("Page state %s -> %s", self._state, state)
        self._state = state
        self._timer.enter(state)

    def _resolve(self, state: PageState) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(state)

    def _finish(self, state: PageState) -> PageState:
        self._state = state
        if not self._started:
            self._emit_start()
        self.record.record_state_timings(self._timer.elapsed_per_state())
        logger.info("--- End: %s (%s)", self.record.url, state)
        self.sink.emit(PAGE_END if state is PageState.DONE else PAGE_ERROR, self.record.url)
        self.record.freeze()
        return state

    def _teardown(self) -> None:
        """Cancel every timer and close every subscription of this page."""
        for handle in (self._give_up_handle, self._load_handle, self._last_response_handle):
            if handle is not None:
                handle.cancel()
        self._give_up_handle = None
        self._load_handle = None
        self._last_response_handle = None
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()
        self._reset_subscription = None
        self._timer.finalize()

    def _subscribe(self, callback: Callable[[dict[str, Any]], None]) -> Subscription:
        sub = self.channel.subscribe(callback)
        self._subscriptions.append(sub)
        return sub

    def _emit_start(self) -> None:
        self._started = True
        logger.info("--- Start: %s", self.record.url)
        self.sink.emit(PAGE_START, self.record.url)

    # ── States ──────────────────────────────────────────────────────

    async def _reset(self) -> PageState:
        # No reliable "stop loading" primitive: park the tab on a blank page
        # and wait until that frame has completely stopped.
        self._reset_subscription = self._subscribe(self._on_reset_event)
        await self._navigate_to(NEUTRAL_URL)
        await self._neutral_stopped.wait()
        self._reset_subscription.close()
        self._reset_subscription = None

        await self._close_connections()
        self._emit_start()
        return PageState.NAVIGATING

    async def _navigate(self) -> PageState:
        # Subscribe before navigating so the first request is not missed
        self._subscribe(self._on_page_event)
        await self._navigate_to(self.record.url)
        return PageState.OBSERVING

    async def _observe(self) -> PageState:
        await self._settled.wait()
        return PageState.EXTRACTING

    async def _extract(self) -> PageState:
        if self.tracker.is_failed():
            logger.info("Page failed before measurement: %s", self.record.url)
            return PageState.FAILED

        snapshot = await self._capture_performance()
        if snapshot is None:
            # Stalls until give-up resolves the outcome (or forever without one)
            return await asyncio.shield(self._outcome)

        # Stop feeding the tracker now; the snapshot is attached only on DONE
        self._finalized = True
        await self.tracker.wait_for_content()

        if self.options.prepare:
            await self._run_prepare()
        if self._outcome.done():
            return self._outcome.result()
        self.record.attach_performance(snapshot)
        return PageState.DONE

    # ── Protocol helpers ────────────────────────────────────────────

    async def _navigate_to(self, url: str) -> None:
        try:
            response = await self.channel.invoke("Page.navigate", {"url": url})
        except ProtocolError as exc:
            raise NavigationError(f"Cannot load URL {url}: {exc}", url=url) from exc
        if response.get("errorText"):
            # Network-level failure; the tracker sees it as loadingFailed
            logger.debug("Navigation to %s reported %s", url, response["errorText"])

    async def _close_connections(self) -> None:
        """Sever connections left open by the previous page."""
        try:
            response = await self.channel.invoke("Runtime.evaluate", {"expression": CLEANUP_SCRIPT})
            error = evaluation_error(response)
        except ProtocolError as exc:
            error = str(exc)
        if error is None:
            return
        if self.options.force:
            logger.warning("Connection cleanup failed, continuing (force): %s", error)
            return
        raise CleanupScriptError(f"Cannot inject JavaScript: {error}")

    async def _capture_performance(self) -> PerformanceSnapshot | None:
        try:
            response = await self.channel.invoke(
                "Runtime.evaluate",
                {"expression": PERFORMANCE_SCRIPT, "returnByValue": True},
            )
        except ProtocolError as exc:
            logger.debug("Performance snapshot failed: %s", exc)
            return None
        error = evaluation_error(response)
        if error is not None:
            logger.debug("Performance script threw: %s", error)
            return None
        try:
            return PerformanceSnapshot.from_json((response.get("result") or {}).get("value"))
        except ExtractionError as exc:
            logger.debug("%s", exc)
            return None

    async def _run_prepare(self) -> None:
        try:
            response = await self.channel.invoke(
                "Runtime.evaluate",
                {"expression": self.options.prepare, "awaitPromise": True},
            )
        except ProtocolError as exc:
            logger.warning("Prepare script failed: %s", exc)
            return
        error = evaluation_error(response)
        if error is not None:
            logger.warning("Prepare script threw: %s", error)

    # ── Event / timer callbacks ─────────────────────────────────────

    def _on_reset_event(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params") or {}
        if method == "Page.frameNavigated":
            frame = params.get("frame") or {}
            if frame.get("url") == NEUTRAL_URL:
                self._neutral_frame_id = frame.get("id")
        elif method == "Page.frameStoppedLoading":
            if self._neutral_frame_id is not None and params.get("frameId") == self._neutral_frame_id:
                self._neutral_stopped.set()

    def _on_page_event(self, message: dict[str, Any]) -> None:
        if self._outcome is None or self._outcome.done():
            return
        if not self._finalized:
            self.tracker.process_message(message)
        if self.tracker.is_finished():
            self._arm_settle_timers()

    def _arm_settle_timers(self) -> None:
        if self._load_handle is None:
            self._load_handle = self._loop.call_later(self.options.on_load_delay / 1000, self._on_settle, "load")
        if self._last_response_handle is not None:
            self._last_response_handle.cancel()
        self._last_response_handle = self._loop.call_later(
            self.options.on_last_response_delay / 1000, self._on_settle, "last_response"
        )

    def _on_settle(self, source: str) -> None:
        if self._outcome is None or self._outcome.done() or self._settled.is_set():
            return
        logger.debug("Page settled (%s timer)", source)
        self.settled_by = source
        self._settled.set()

    def _on_give_up(self) -> None:
        if self._outcome is None or self._outcome.done():
            return
        self._give_up_handle = None
        report = self._timer.timeout_report()
        logger.info("--- Giving up: %s in %s (%s)", self.record.url, self._state, self._state.give_up_hint)
        logger.debug("Give-up report: %s", report)
        self.record.mark_as_failed()
        self._resolve(PageState.FAILED)
