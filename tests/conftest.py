# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import harcapturer  # noqa: F401
except ImportError:
    raise ImportError("harcapturer is not installed. Run: pip install -e '.[dev]'") from None

import pytest

from tests._fake_channel import FakeChannel


def pytest_configure(config):
    config.addinivalue_line("markers", "allow_real_playwright: test may start Playwright itself")


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real browser sessions in unit tests.

    Tests that exercise ``PlaywrightControlChannel`` patch
    ``harcapturer.control_channel.async_playwright`` explicitly; that patch
    takes priority over this fixture. Opt out with::

        @pytest.mark.allow_real_playwright
    """
    if "allow_real_playwright" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError(
            "Test tried to start Playwright. Patch 'harcapturer.control_channel.async_playwright' in your test."
        )

    monkeypatch.setattr("harcapturer.control_channel.async_playwright", _no_real_playwright)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def factory_for():
    """Build a channel_factory returning the given channel."""

    def _make(ch):
        async def _factory(options):
            return ch

        return _factory

    return _make
