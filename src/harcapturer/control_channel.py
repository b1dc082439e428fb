# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""DevTools control channel: command invocation + subscribable event stream.

``ControlChannel`` is the protocol the capturer consumes. The concrete
``PlaywrightControlChannel`` attaches a Playwright CDP session to the first tab
of a Chromium instance, either an already running one (``connect_over_cdp``)
or a headless one launched here.

Events are delivered synchronously, in arrival order, to every active
subscription as ``{"method": ..., "params": ...}`` dicts.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any, Protocol

from playwright.async_api import Browser, CDPSession, Page, Playwright, async_playwright

from .errors import ProtocolError, SessionError
from .options import CaptureOptions

logger = logging.getLogger(__name__)

MessageCallback = Callable[[dict[str, Any]], None]

# CDP events forwarded to subscribers (Playwright needs explicit names)
CDP_EVENTS = (
    "Page.frameNavigated",
    "Page.frameStartedLoading",
    "Page.frameStoppedLoading",
    "Page.domContentEventFired",
    "Page.loadEventFired",
    "Network.requestWillBeSent",
    "Network.requestServedFromCache",
    "Network.responseReceived",
    "Network.dataReceived",
    "Network.loadingFinished",
    "Network.loadingFailed",
)


def chromium_launch_args() -> list[str]:
    """Chromium flags for a measurement browser.

    The benchmarking flags expose ``chrome.benchmarking.closeConnections()``,
    which the page reset step relies on.
    """
    return [
        "--enable-benchmarking",
        "--enable-net-benchmarking",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-component-update",
        "--disable-domain-reliability",
        "--disable-breakpad",
        "--no-first-run",
        "--no-pings",
        "--noerrdialogs",
    ]


class Subscription:
    """Handle for one event listener. Closing it is idempotent."""

    __slots__ = ("_callback", "_dispatcher", "active")

    def __init__(self, dispatcher: EventDispatcher, callback: MessageCallback) -> None:
        self._dispatcher = dispatcher
        self._callback = callback
        self.active = True

    def deliver(self, message: dict[str, Any]) -> None:
        if self.active:
            self._callback(message)

    def close(self) -> None:
        if self.active:
            self.active = False
            self._dispatcher.remove(self)


class EventDispatcher:
    """Ordered fan-out of protocol events to subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: MessageCallback) -> Subscription:
        sub = Subscription(self, callback)
        self._subscriptions.append(sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        with suppress(ValueError):
            self._subscriptions.remove(sub)

    def dispatch(self, message: dict[str, Any]) -> None:
        # Snapshot: a callback may close its own (or another) subscription
        for sub in list(self._subscriptions):
            if not sub.active:
                continue
            try:
                sub.deliver(message)
            except Exception:
                logger.exception("Event subscriber failed on %s", message.get("method"))

    def clear(self) -> None:
        for sub in list(self._subscriptions):
            sub.close()


class ControlChannel(Protocol):
    """What the capturer needs from a browser control session."""

    async def invoke(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def subscribe(self, callback: MessageCallback) -> Subscription: ...

    async def wait_ready(self) -> None: ...

    async def close(self) -> None: ...


class PlaywrightControlChannel:
    """Control channel backed by a Playwright CDP session."""

    def __init__(self, options: CaptureOptions | None = None) -> None:
        self.options = options or CaptureOptions()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None
        self._cdp: CDPSession | None = None
        self._dispatcher = EventDispatcher()
        self._ready = asyncio.Event()
        self._closed = False
        self._owns_browser = False

    @property
    def is_open(self) -> bool:
        return self._cdp is not None and not self._closed

    async def start(self) -> None:
        """Connect (or launch), open a CDP session on the first tab."""
        where = "local headless Chromium" if self.options.launch else self.options.endpoint_url
        try:
            self._playwright = await async_playwright().start()
            if self.options.launch:
                self._browser = await self._playwright.chromium.launch(headless=True, args=chromium_launch_args())
                self._owns_browser = True
            else:
                self._browser = await self._playwright.chromium.connect_over_cdp(self.options.endpoint_url)
            contexts = self._browser.contexts
            context = contexts[0] if contexts else await self._browser.new_context()
            self._page = context.pages[0] if context.pages else await context.new_page()
            self._cdp = await context.new_cdp_session(self._page)
        except Exception as exc:
            await self.close()
            raise SessionError(f"Cannot open control channel to {where}: {exc}") from exc

        for name in CDP_EVENTS:
            self._cdp.on(name, functools.partial(self._on_cdp_event, name))
        self._ready.set()
        logger.info("Control channel open (%s)", where)

    def _on_cdp_event(self, method: str, params: dict[str, Any] | None) -> None:
        self._dispatcher.dispatch({"method": method, "params": params or {}})

    async def invoke(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_open:
            raise ProtocolError(f"{method}: control channel is closed", method=method)
        try:
            result = await self._cdp.send(method, params or {})
        except Exception as exc:
            raise ProtocolError(f"{method} failed: {exc}", method=method) from exc
        return result or {}

    def subscribe(self, callback: MessageCallback) -> Subscription:
        return self._dispatcher.subscribe(callback)

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def close(self) -> None:
        """Detach and disconnect. Safe to call twice or on a half-open channel.

        A browser we connected to is left running; one we launched is closed.
        """
        if self._closed:
            return
        self._closed = True
        self._dispatcher.clear()

        if self._cdp is not None:
            with suppress(Exception):
                await self._cdp.detach()
            self._cdp = None

        if self._browser is not None and self._owns_browser:
            with suppress(Exception):
                await self._browser.close()
        self._browser = None
        self._page = None

        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None

        logger.info("Control channel closed")

    async def __aenter__(self) -> PlaywrightControlChannel:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()


async def open_channel(options: CaptureOptions | None = None) -> PlaywrightControlChannel:
    """Open a started control channel. Raises SessionError on failure."""
    channel = PlaywrightControlChannel(options)
    await channel.start()
    return channel


@asynccontextmanager
async def create_channel(
    options: CaptureOptions | None = None,
) -> AsyncGenerator[PlaywrightControlChannel, None]:
    """Context manager to open and always close a control channel."""
    channel = await open_channel(options)
    try:
        yield channel
    finally:
        await channel.close()
