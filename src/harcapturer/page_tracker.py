# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-page network activity tracker.

Consumes the CDP Network/Page events of one navigation attempt and keeps:
- one NetworkEntry per request (redirect hops become separate entries)
- page lifecycle timestamps (first request, DOMContentLoaded, load)
- finished / failed status

Finished means the load event fired and no request is still pending, or the
page failed. Failed means the main document request failed or the page was
explicitly marked as failed (give-up).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import ProtocolError

if TYPE_CHECKING:
    from .control_channel import ControlChannel

logger = logging.getLogger(__name__)


@dataclass
class NetworkEntry:
    """One request/response exchange observed over the Network domain."""

    request_id: str
    request: dict[str, Any]
    timestamp: float  # monotonic seconds (CDP MonotonicTime)
    wall_time: float  # epoch seconds
    resource_type: str = ""
    frame_id: str = ""
    response: dict[str, Any] | None = None
    end_timestamp: float | None = None
    data_length: int = 0
    encoded_data_length: int = 0
    from_cache: bool = False
    error_text: str | None = None
    content: str | None = None
    base64_encoded: bool = False
    finished: bool = False
    redirected: bool = False

    @property
    def complete(self) -> bool:
        """True when the exchange ended with a response (HAR-reportable)."""
        return self.finished and self.response is not None and self.error_text is None


class PageActivityTracker:
    """Accumulate protocol events for exactly one page load."""

    def __init__(
        self,
        index: int,
        url: str,
        channel: ControlChannel,
        fetch_content: bool = False,
    ) -> None:
        self.index = index
        self.url = url
        self.fetch_content = fetch_content
        self._channel = channel
        self._entries: list[NetworkEntry] = []
        self._pending: dict[str, NetworkEntry] = {}
        self._document_request_id: str | None = None
        self._failed = False
        self._closed = False
        self._body_tasks: set[asyncio.Task] = set()

        self.start_timestamp: float | None = None
        self.start_wall_time: float | None = None
        self.dom_content_timestamp: float | None = None
        self.load_timestamp: float | None = None

        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "Network.requestWillBeSent": self._on_request_will_be_sent,
            "Network.requestServedFromCache": self._on_served_from_cache,
            "Network.responseReceived": self._on_response_received,
            "Network.dataReceived": self._on_data_received,
            "Network.loadingFinished": self._on_loading_finished,
            "Network.loadingFailed": self._on_loading_failed,
            "Page.domContentEventFired": self._on_dom_content,
            "Page.loadEventFired": self._on_load,
        }

    # ── Status ──────────────────────────────────────────────────────

    def is_finished(self) -> bool:
        return self._failed or (self.load_timestamp is not None and not self._pending)

    def is_failed(self) -> bool:
        return self._failed

    def mark_as_failed(self) -> None:
        self._failed = True

    @property
    def entries(self) -> list[NetworkEntry]:
        return list(self._entries)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Event processing ────────────────────────────────────────────

    def process_message(self, message: dict[str, Any]) -> None:
        """Feed one ``{"method", "params"}`` protocol event."""
        if self._closed:
            return
        handler = self._handlers.get(message.get("method", ""))
        if handler is not None:
            handler(message.get("params") or {})

    def _on_request_will_be_sent(self, params: dict[str, Any]) -> None:
        request_id = params.get("requestId")
        if not request_id:
            return
        redirect_response = params.get("redirectResponse")
        if redirect_response is not None:
            previous = self._pending.pop(request_id, None)
            if previous is not None:
                previous.response = redirect_response
                previous.end_timestamp = params.get("timestamp")
                previous.finished = True
                previous.redirected = True

        entry = NetworkEntry(
            request_id=request_id,
            request=params.get("request") or {},
            timestamp=params.get("timestamp", 0.0),
            wall_time=params.get("wallTime", 0.0),
            resource_type=params.get("type", ""),
            frame_id=params.get("frameId", ""),
        )
        if self.start_timestamp is None:
            self.start_timestamp = entry.timestamp
            self.start_wall_time = entry.wall_time
        if self._document_request_id is None and entry.resource_type == "Document":
            self._document_request_id = request_id
        self._entries.append(entry)
        self._pending[request_id] = entry

    def _on_served_from_cache(self, params: dict[str, Any]) -> None:
        entry = self._pending.get(params.get("requestId", ""))
        if entry is not None:
            entry.from_cache = True

    def _on_response_received(self, params: dict[str, Any]) -> None:
        entry = self._pending.get(params.get("requestId", ""))
        if entry is None:
            return
        entry.response = params.get("response") or {}
        if params.get("type"):
            entry.resource_type = params["type"]

    def _on_data_received(self, params: dict[str, Any]) -> None:
        entry = self._pending.get(params.get("requestId", ""))
        if entry is None:
            return
        entry.data_length += params.get("dataLength", 0)
        entry.encoded_data_length += params.get("encodedDataLength", 0)

    def _on_loading_finished(self, params: dict[str, Any]) -> None:
        entry = self._pending.pop(params.get("requestId", ""), None)
        if entry is None:
            return
        entry.end_timestamp = params.get("timestamp")
        if params.get("encodedDataLength") is not None:
            entry.encoded_data_length = params["encodedDataLength"]
        entry.finished = True
        if self.fetch_content and entry.response is not None:
            self._fetch_body(entry)

    def _on_loading_failed(self, params: dict[str, Any]) -> None:
        request_id = params.get("requestId", "")
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        entry.end_timestamp = params.get("timestamp")
        entry.error_text = params.get("errorText") or "failed"
        entry.finished = True
        if request_id == self._document_request_id:
            logger.debug("Main document failed: %s (%s)", self.url, entry.error_text)
            self._failed = True

    def _on_dom_content(self, params: dict[str, Any]) -> None:
        self.dom_content_timestamp = params.get("timestamp")

    def _on_load(self, params: dict[str, Any]) -> None:
        self.load_timestamp = params.get("timestamp")

    # ── Response bodies ─────────────────────────────────────────────

    def _fetch_body(self, entry: NetworkEntry) -> None:
        task = asyncio.ensure_future(self._get_body(entry))
        self._body_tasks.add(task)
        task.add_done_callback(self._body_tasks.discard)

    async def _get_body(self, entry: NetworkEntry) -> None:
        try:
            result = await self._channel.invoke("Network.getResponseBody", {"requestId": entry.request_id})
        except ProtocolError as exc:
            logger.debug("No body for %s: %s", entry.request.get("url", entry.request_id), exc)
            return
        entry.content = result.get("body")
        entry.base64_encoded = bool(result.get("base64Encoded"))

    async def wait_for_content(self) -> None:
        """Wait for outstanding response body fetches."""
        if self._body_tasks:
            await asyncio.gather(*list(self._body_tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop accepting events and drop unfinished body fetches."""
        self._closed = True
        for task in list(self._body_tasks):
            task.cancel()
