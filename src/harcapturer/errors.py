# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HAR capturer exception hierarchy.

All capture errors inherit from CaptureError. Fatal (session-level) failures
are SessionError, NavigationError and CleanupScriptError: the driver reports
them through the ``error`` event and stops the run.
"""

from __future__ import annotations


class CaptureError(Exception):
    """Base exception for all HAR capturer errors."""


class SessionError(CaptureError):
    """Control channel could not be opened or configured."""


class ProtocolError(CaptureError):
    """A DevTools protocol command failed."""

    def __init__(self, message: str, *, method: str = "") -> None:
        super().__init__(message)
        self.method = method


class NavigationError(CaptureError):
    """Page.navigate failed (treated as session breakage, not a page failure)."""

    def __init__(self, message: str, *, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class CleanupScriptError(CaptureError):
    """Connection cleanup script could not be injected or threw."""


class ExtractionError(CaptureError):
    """Performance snapshot payload could not be parsed."""


class OptionsError(CaptureError):
    """Invalid capture configuration."""


class RecordFrozenError(CaptureError):
    """Attempt to mutate a page record after its outcome was emitted."""
