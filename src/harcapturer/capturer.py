# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Sequencing driver: one control channel, many pages, strictly one at a time.

Usage:
    from harcapturer.capturer import capture_sync
    from harcapturer.events import CallbackSink

    sink = CallbackSink().on("pageEnd", print)
    report = capture_sync(["https://example.com"], sink=sink)

Event order: connect → (pageStart, pageEnd|pageError)* → end(report).
A fatal error emits ``error`` instead of ``end`` and closes the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any

from . import PageRecord, har
from .control_channel import ControlChannel, open_channel
from .errors import CaptureError, ProtocolError, SessionError
from .events import CONNECT, END, ERROR, EventSink, NullSink
from .options import CaptureOptions
from .page_machine import PageState, PageStateMachine
from .page_tracker import PageActivityTracker

logger = logging.getLogger(__name__)

PAGE_DELAY = 1.0  # seconds waited after each page, the last one included, before moving on

ChannelFactory = Callable[[CaptureOptions], Awaitable[ControlChannel]]
ReportBuilder = Callable[[Sequence[PageRecord]], Any]


class Capturer:
    """Capture an ordered list of URLs on one control channel."""

    def __init__(
        self,
        urls: Iterable[str],
        options: CaptureOptions | None = None,
        sink: EventSink | None = None,
        *,
        channel_factory: ChannelFactory = open_channel,
        report_builder: ReportBuilder = har.create,
        page_delay: float = PAGE_DELAY,
    ) -> None:
        self.urls: tuple[str, ...] = tuple(urls)
        self.options = options or CaptureOptions()
        self.sink: EventSink = sink or NullSink()
        self._channel_factory = channel_factory
        self._report_builder = report_builder
        self._page_delay = page_delay
        self._records: list[PageRecord] = []
        self._outcomes: list[PageState] = []

    @property
    def records(self) -> list[PageRecord]:
        return list(self._records)

    @property
    def outcomes(self) -> list[PageState]:
        return list(self._outcomes)

    async def run(self) -> Any | None:
        """Run the capture. Returns the report, or None after a fatal error."""
        try:
            channel = await self._channel_factory(self.options)
        except CaptureError as exc:
            self._fail(exc)
            return None

        self.sink.emit(CONNECT)
        try:
            await self._configure(channel)
            await channel.wait_ready()
            await self._run_pages(channel)
        except CaptureError as exc:
            await channel.close()
            self._fail(exc)
            return None
        except BaseException:
            await channel.close()
            raise

        await channel.close()
        report = self._report_builder(self._records)
        logger.info(
            "Capture finished: %d pages, %d failed",
            len(self._records),
            sum(1 for state in self._outcomes if state is PageState.FAILED),
        )
        self.sink.emit(END, report)
        return report

    async def _configure(self, channel: ControlChannel) -> None:
        """Enable the domains the tracker needs and apply cache / UA settings."""
        try:
            await channel.invoke("Page.enable")
            await channel.invoke("Network.enable")
            await channel.invoke("Network.setCacheDisabled", {"cacheDisabled": not self.options.cache})
            if self.options.user_agent is not None:
                await channel.invoke("Network.setUserAgentOverride", {"userAgent": self.options.user_agent})
        except ProtocolError as exc:
            raise SessionError(f"Cannot configure browser session: {exc}") from exc

    async def _run_pages(self, channel: ControlChannel) -> None:
        for index, url in enumerate(self.urls):
            tracker = PageActivityTracker(index, url, channel, self.options.fetch_content)
            record = PageRecord(index=index, url=url, tracker=tracker)
            self._records.append(record)
            machine = PageStateMachine(record, channel, self.options, self.sink)
            self._outcomes.append(await machine.run())
            if self._page_delay > 0:
                await asyncio.sleep(self._page_delay)

    def _fail(self, exc: CaptureError) -> None:
        logger.error("Emitting 'error' event: %s", exc)
        self.sink.emit(ERROR, exc)


async def capture(
    urls: Iterable[str],
    options: CaptureOptions | None = None,
    sink: EventSink | None = None,
    **kwargs: Any,
) -> Any | None:
    """Run one capture and return its report (None on fatal error)."""
    return await Capturer(urls, options, sink, **kwargs).run()


def capture_sync(
    urls: Iterable[str],
    options: CaptureOptions | None = None,
    sink: EventSink | None = None,
    **kwargs: Any,
) -> Any | None:
    """Blocking wrapper around :func:`capture`."""
    return asyncio.run(capture(urls, options, sink, **kwargs))
