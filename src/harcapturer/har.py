# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTTP Archive (HAR 1.2) report builder.

Usage:
    from harcapturer import har

    report = har.create(records)
    har.save(report, Path("out.har"))

One ``log.pages`` item per page record, in input order. Network entries are
emitted for completed exchanges only (a response was received and the
request did not fail). Failed pages keep their page item, flagged ``_failed``,
without entries or performance data.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from . import PageRecord, __version__
from .page_tracker import NetworkEntry

logger = logging.getLogger(__name__)

HAR_VERSION = "1.2"
CREATOR_NAME = "harcapturer"

_DEFAULT_HTTP_VERSION = "HTTP/1.1"
_PROTOCOL_VERSIONS = {"h2": "HTTP/2.0", "h3": "HTTP/3", "http/1.0": "HTTP/1.0", "http/1.1": "HTTP/1.1"}


def _iso(wall_time: float | None) -> str:
    return datetime.fromtimestamp(wall_time or 0, UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _ms(start: float | None, end: float | None) -> float:
    """Milliseconds between two CDP monotonic timestamps; -1 when unknown."""
    if start is None or end is None:
        return -1
    return round((end - start) * 1000, 3)


def _name_value_list(headers: Mapping[str, Any] | None) -> list[dict[str, str]]:
    if not headers:
        return []
    result = []
    for name, value in headers.items():
        # CDP joins repeated headers with newlines
        for part in str(value).split("\n"):
            result.append({"name": name, "value": part})
    return result


def _header(headers: Mapping[str, Any] | None, name: str) -> str:
    if not headers:
        return ""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return str(value)
    return ""


def _http_version(protocol: str | None) -> str:
    if not protocol:
        return _DEFAULT_HTTP_VERSION
    return _PROTOCOL_VERSIONS.get(protocol, protocol.upper())


def _span(start: float | None, end: float | None) -> float:
    if start is None or end is None or start < 0 or end < 0:
        return -1
    return round(end - start, 3)


def entry_timings(entry: NetworkEntry) -> dict[str, float]:
    """HAR timings for one entry from CDP ResourceTiming.

    ``ssl`` is reported separately but is already part of ``connect``.
    """
    response = entry.response or {}
    timing = response.get("timing")
    if not timing:
        total = _ms(entry.timestamp, entry.end_timestamp)
        return {
            "blocked": -1,
            "dns": -1,
            "connect": -1,
            "send": 0,
            "wait": 0,
            "receive": max(total, 0),
            "ssl": -1,
        }

    request_time = timing.get("requestTime", entry.timestamp)
    queued = max(round((request_time - entry.timestamp) * 1000, 3), 0)

    dns = _span(timing.get("dnsStart", -1), timing.get("dnsEnd", -1))
    connect = _span(timing.get("connectStart", -1), timing.get("connectEnd", -1))
    ssl = _span(timing.get("sslStart", -1), timing.get("sslEnd", -1))
    send_start = timing.get("sendStart", 0)
    send_end = timing.get("sendEnd", send_start)
    headers_end = timing.get("receiveHeadersEnd", send_end)

    first_phase = next(
        (v for v in (timing.get("dnsStart", -1), timing.get("connectStart", -1), send_start) if v >= 0),
        0,
    )
    blocked = round(queued + first_phase, 3)
    send = max(round(send_end - send_start, 3), 0)
    wait = max(round(headers_end - send_end, 3), 0)
    if entry.end_timestamp is not None:
        receive = max(round((entry.end_timestamp - request_time) * 1000 - headers_end, 3), 0)
    else:
        receive = 0

    return {
        "blocked": blocked,
        "dns": dns,
        "connect": connect,
        "send": send,
        "wait": wait,
        "receive": receive,
        "ssl": ssl,
    }


def _total_time(timings: Mapping[str, float]) -> float:
    return round(sum(v for k, v in timings.items() if k != "ssl" and v > 0), 3)


def _request(entry: NetworkEntry) -> dict[str, Any]:
    request = entry.request
    url = request.get("url", "")
    headers = request.get("headers") or {}
    result: dict[str, Any] = {
        "method": request.get("method", "GET"),
        "url": url,
        "httpVersion": _http_version((entry.response or {}).get("protocol")),
        "cookies": [],
        "headers": _name_value_list(headers),
        "queryString": [{"name": k, "value": v} for k, v in parse_qsl(urlsplit(url).query, keep_blank_values=True)],
        "headersSize": -1,
        "bodySize": len(request.get("postData", "").encode()) if request.get("postData") else 0,
    }
    if request.get("postData"):
        result["postData"] = {
            "mimeType": _header(headers, "Content-Type"),
            "text": request["postData"],
        }
    return result


def _response(entry: NetworkEntry) -> dict[str, Any]:
    response = entry.response or {}
    headers = response.get("headers") or {}
    content: dict[str, Any] = {
        "size": entry.data_length,
        "mimeType": response.get("mimeType", ""),
    }
    if entry.content is not None:
        content["text"] = entry.content
        if entry.base64_encoded:
            content["encoding"] = "base64"
    compression = entry.data_length - entry.encoded_data_length
    if entry.encoded_data_length and compression > 0:
        content["compression"] = compression
    return {
        "status": response.get("status", 0),
        "statusText": response.get("statusText", ""),
        "httpVersion": _http_version(response.get("protocol")),
        "cookies": [],
        "headers": _name_value_list(headers),
        "content": content,
        "redirectURL": _header(headers, "Location"),
        "headersSize": -1,
        "bodySize": -1 if entry.from_cache else entry.encoded_data_length,
    }


def entry_to_har(entry: NetworkEntry, page_id: str) -> dict[str, Any]:
    timings = entry_timings(entry)
    result: dict[str, Any] = {
        "pageref": page_id,
        "startedDateTime": _iso(entry.wall_time),
        "time": _total_time(timings),
        "request": _request(entry),
        "response": _response(entry),
        "cache": {},
        "timings": timings,
        "_resourceType": entry.resource_type,
    }
    remote_ip = (entry.response or {}).get("remoteIPAddress")
    if remote_ip:
        result["serverIPAddress"] = remote_ip
    connection_id = (entry.response or {}).get("connectionId")
    if connection_id:
        result["connection"] = str(connection_id)
    return result


def page_to_har(record: PageRecord) -> dict[str, Any]:
    tracker = record.tracker
    page: dict[str, Any] = {
        "id": record.page_id,
        "startedDateTime": _iso(tracker.start_wall_time),
        "title": record.url,
        "pageTimings": {
            "onContentLoad": _ms(tracker.start_timestamp, tracker.dom_content_timestamp),
            "onLoad": _ms(tracker.start_timestamp, tracker.load_timestamp),
        },
        "_stateTimings": dict(record.state_timings),
    }
    if record.failed:
        page["_failed"] = True
    elif record.performance is not None:
        page["_performance"] = record.performance.to_dict()
    return page


def create(records: Iterable[PageRecord]) -> dict[str, Any]:
    """Build the HAR document from page records in capture order."""
    pages: list[dict[str, Any]] = []
    entries: list[dict[str, Any]] = []
    for record in records:
        pages.append(page_to_har(record))
        if record.failed:
            continue
        skipped = 0
        for entry in record.tracker.entries:
            if entry.complete:
                entries.append(entry_to_har(entry, record.page_id))
            else:
                skipped += 1
        if skipped:
            logger.debug("Skipped %d incomplete entries for %s", skipped, record.url)
    return {
        "log": {
            "version": HAR_VERSION,
            "creator": {"name": CREATOR_NAME, "version": __version__},
            "pages": pages,
            "entries": entries,
        }
    }


def save(report: Mapping[str, Any], path: str | Path) -> Path:
    """Write the report as indented JSON. Creates parent directories."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("HAR written to %s", out)
    return out
