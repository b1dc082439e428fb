# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the control channel: event fan-out and the Playwright CDP backend.

Playwright is fully mocked; no browser is started.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from harcapturer.control_channel import (
    CDP_EVENTS,
    EventDispatcher,
    PlaywrightControlChannel,
    chromium_launch_args,
    create_channel,
    open_channel,
)
from harcapturer.errors import ProtocolError, SessionError
from harcapturer.options import CaptureOptions


def _mock_playwright(*, contexts=True, pages=True):
    """Build the async_playwright() → Playwright → Browser → context → CDPSession chain."""
    cdp = MagicMock()
    cdp.send = AsyncMock(return_value={"frameId": "main"})
    cdp.detach = AsyncMock()

    page = MagicMock()
    context = MagicMock()
    context.pages = [page] if pages else []
    context.new_page = AsyncMock(return_value=page)
    context.new_cdp_session = AsyncMock(return_value=cdp)

    browser = MagicMock()
    browser.contexts = [context] if contexts else []
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()

    pw = MagicMock()
    pw.chromium.connect_over_cdp = AsyncMock(return_value=browser)
    pw.chromium.launch = AsyncMock(return_value=browser)
    pw.stop = AsyncMock()

    factory = MagicMock()
    factory.return_value.start = AsyncMock(return_value=pw)
    return factory, pw, browser, context, cdp


def _handler_for(cdp, name):
    for call in cdp.on.call_args_list:
        if call.args[0] == name:
            return call.args[1]
    raise AssertionError(f"no handler for {name}")


# ── EventDispatcher ──────────────────────────────────────────────────


class TestEventDispatcher:
    def test_fan_out_in_subscription_order(self):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.subscribe(lambda m: seen.append(("a", m["method"])))
        dispatcher.subscribe(lambda m: seen.append(("b", m["method"])))
        dispatcher.dispatch({"method": "Page.loadEventFired", "params": {}})
        assert seen == [("a", "Page.loadEventFired"), ("b", "Page.loadEventFired")]

    def test_closed_subscription_not_delivered(self):
        dispatcher = EventDispatcher()
        seen = []
        sub = dispatcher.subscribe(seen.append)
        sub.close()
        sub.close()
        dispatcher.dispatch({"method": "x"})
        assert seen == []
        assert dispatcher.subscriber_count == 0
        assert not sub.active

    def test_subscription_closed_during_dispatch(self):
        dispatcher = EventDispatcher()
        seen = []
        second = None

        def _first(message):
            seen.append("first")
            second.close()

        dispatcher.subscribe(_first)
        second = dispatcher.subscribe(lambda m: seen.append("second"))
        dispatcher.dispatch({"method": "x"})
        assert seen == ["first"]

    def test_failing_subscriber_isolated(self):
        dispatcher = EventDispatcher()
        seen = []

        def _boom(message):
            raise RuntimeError("bug")

        dispatcher.subscribe(_boom)
        dispatcher.subscribe(seen.append)
        dispatcher.dispatch({"method": "x"})
        assert seen == [{"method": "x"}]

    def test_clear(self):
        dispatcher = EventDispatcher()
        subs = [dispatcher.subscribe(print) for _ in range(3)]
        dispatcher.clear()
        assert dispatcher.subscriber_count == 0
        assert not any(s.active for s in subs)


def test_launch_args_enable_benchmarking():
    args = chromium_launch_args()
    assert "--enable-benchmarking" in args
    assert "--enable-net-benchmarking" in args


# ── PlaywrightControlChannel ─────────────────────────────────────────


class TestPlaywrightControlChannel:
    async def test_connect_over_cdp(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel(CaptureOptions(host="10.0.0.5", port=9333))

        pw.chromium.connect_over_cdp.assert_awaited_once_with("http://10.0.0.5:9333")
        pw.chromium.launch.assert_not_called()
        context.new_cdp_session.assert_awaited_once_with(context.pages[0])
        assert [c.args[0] for c in cdp.on.call_args_list] == list(CDP_EVENTS)
        assert channel.is_open
        await channel.wait_ready()

    async def test_launch(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel(CaptureOptions(launch=True))
            await channel.close()

        pw.chromium.launch.assert_awaited_once_with(headless=True, args=chromium_launch_args())
        browser.close.assert_awaited_once()

    async def test_connected_browser_left_running(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()
            await channel.close()
            await channel.close()

        browser.close.assert_not_called()
        cdp.detach.assert_awaited_once()
        pw.stop.assert_awaited_once()
        assert not channel.is_open

    async def test_new_context_and_page_when_none(self):
        factory, pw, browser, context, cdp = _mock_playwright(contexts=False, pages=False)
        with patch("harcapturer.control_channel.async_playwright", factory):
            await open_channel()
        browser.new_context.assert_awaited_once()
        context.new_page.assert_awaited_once()

    async def test_start_failure_is_session_error(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        pw.chromium.connect_over_cdp.side_effect = ConnectionRefusedError("refused")
        with patch("harcapturer.control_channel.async_playwright", factory):
            with pytest.raises(SessionError, match="localhost:9222|refused"):
                await open_channel(CaptureOptions(host="localhost", port=9222))
        pw.stop.assert_awaited_once()

    async def test_events_forwarded_to_subscribers(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()

        seen = []
        channel.subscribe(seen.append)
        _handler_for(cdp, "Network.requestWillBeSent")({"requestId": "1"})
        _handler_for(cdp, "Page.loadEventFired")(None)
        assert seen == [
            {"method": "Network.requestWillBeSent", "params": {"requestId": "1"}},
            {"method": "Page.loadEventFired", "params": {}},
        ]

    async def test_invoke(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()
            result = await channel.invoke("Page.navigate", {"url": "about:blank"})

        cdp.send.assert_awaited_once_with("Page.navigate", {"url": "about:blank"})
        assert result == {"frameId": "main"}

    async def test_invoke_error_wrapped(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        cdp.send.side_effect = RuntimeError("Target closed")
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()
            with pytest.raises(ProtocolError) as exc_info:
                await channel.invoke("Runtime.evaluate", {"expression": "1"})
        assert exc_info.value.method == "Runtime.evaluate"

    async def test_invoke_after_close(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()
            await channel.close()
            with pytest.raises(ProtocolError, match="closed"):
                await channel.invoke("Page.enable")

    async def test_close_drops_subscribers(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            channel = await open_channel()
            sub = channel.subscribe(print)
            await channel.close()
        assert not sub.active

    async def test_create_channel_context_manager(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            async with create_channel() as channel:
                assert channel.is_open
        assert not channel.is_open
        pw.stop.assert_awaited_once()

    async def test_async_with(self):
        factory, pw, browser, context, cdp = _mock_playwright()
        with patch("harcapturer.control_channel.async_playwright", factory):
            async with PlaywrightControlChannel() as channel:
                assert channel.is_open
        cdp.detach.assert_awaited_once()
