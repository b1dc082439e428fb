# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the HAR report builder."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from harcapturer import PageRecord, PerformanceSnapshot, __version__, har
from harcapturer.page_tracker import NetworkEntry, PageActivityTracker
from tests._fake_channel import DEFAULT_PERFORMANCE, failed_document_events, page_events, unfinished_page_events

A = "http://a.test/"
B = "http://b.test/?q=1&empty="


def _record(index, url, events, *, performance=True, failed=False):
    tracker = PageActivityTracker(index, url, MagicMock())
    for method, params, *_ in events:
        tracker.process_message({"method": method, "params": params})
    record = PageRecord(index=index, url=url, tracker=tracker)
    if failed:
        record.mark_as_failed()
    elif performance:
        record.attach_performance(PerformanceSnapshot(**DEFAULT_PERFORMANCE))
    record.record_state_timings({"resetting": 1.0, "observing": 2.0})
    record.freeze()
    return record


# ── Document ─────────────────────────────────────────────────────────


class TestCreate:
    def test_log_header(self):
        report = har.create([])
        log = report["log"]
        assert log["version"] == "1.2"
        assert log["creator"] == {"name": "harcapturer", "version": __version__}
        assert log["pages"] == [] and log["entries"] == []

    def test_pages_in_input_order(self):
        records = [_record(0, A, page_events(A)), _record(1, B, page_events(B))]
        pages = har.create(records)["log"]["pages"]
        assert [p["id"] for p in pages] == ["page_0", "page_1"]
        assert [p["title"] for p in pages] == [A, B]

    def test_entries_reference_their_page(self):
        records = [_record(0, A, page_events(A)), _record(1, B, page_events(B, request_id="7"))]
        entries = har.create(records)["log"]["entries"]
        assert [(e["pageref"], e["request"]["url"]) for e in entries] == [("page_0", A), ("page_1", B)]

    def test_page_item(self):
        page = har.create([_record(0, A, page_events(A))])["log"]["pages"][0]
        assert page["startedDateTime"] == "2023-11-14T22:13:20.000Z"
        assert page["pageTimings"] == {"onContentLoad": pytest.approx(250.0), "onLoad": pytest.approx(300.0)}
        assert page["_performance"] == DEFAULT_PERFORMANCE
        assert page["_stateTimings"] == {"resetting": 1.0, "observing": 2.0}
        assert "_failed" not in page

    def test_failed_page_has_no_entries(self):
        records = [_record(0, A, failed_document_events(A), failed=True), _record(1, B, page_events(B))]
        log = har.create(records)["log"]
        assert log["pages"][0]["_failed"] is True
        assert "_performance" not in log["pages"][0]
        assert all(e["pageref"] == "page_1" for e in log["entries"])

    def test_page_without_events(self):
        page = har.create([_record(0, A, [], failed=True)])["log"]["pages"][0]
        assert page["startedDateTime"] == "1970-01-01T00:00:00.000Z"
        assert page["pageTimings"] == {"onContentLoad": -1, "onLoad": -1}

    def test_incomplete_entries_skipped(self):
        record = _record(0, A, unfinished_page_events(A), performance=False)
        assert har.create([record])["log"]["entries"] == []

    def test_report_is_json_serialisable(self):
        report = har.create([_record(0, A, page_events(A))])
        assert json.loads(json.dumps(report)) == report


# ── Entries ──────────────────────────────────────────────────────────


class TestEntry:
    def _entry(self, url=A, **response):
        tracker = PageActivityTracker(0, url, MagicMock())
        for method, params, *_ in page_events(url):
            tracker.process_message({"method": method, "params": params})
        entry = tracker.entries[0]
        entry.response.update(response)
        return har.entry_to_har(entry, "page_0")

    def test_timings_from_resource_timing(self):
        result = self._entry()
        timings = result["timings"]
        assert timings["blocked"] == pytest.approx(2.0)
        assert timings["dns"] == pytest.approx(4.0)
        assert timings["connect"] == pytest.approx(15.0)
        assert timings["ssl"] == -1
        assert timings["send"] == pytest.approx(0.5)
        assert timings["wait"] == pytest.approx(99.0)
        assert timings["receive"] == pytest.approx(79.0)
        assert result["time"] == pytest.approx(199.5)

    def test_request_and_response(self):
        result = self._entry(url=B, remoteIPAddress="10.0.0.1", connectionId=42)
        request, response = result["request"], result["response"]
        assert request["method"] == "GET"
        assert request["httpVersion"] == "HTTP/1.1"
        assert request["queryString"] == [{"name": "q", "value": "1"}, {"name": "empty", "value": ""}]
        assert {"name": "Accept", "value": "text/html"} in request["headers"]
        assert response["status"] == 200
        assert response["content"] == {"size": 1000, "mimeType": "text/html", "compression": 400}
        assert response["bodySize"] == 600
        assert result["serverIPAddress"] == "10.0.0.1"
        assert result["connection"] == "42"
        assert result["_resourceType"] == "Document"
        assert result["startedDateTime"] == "2023-11-14T22:13:20.000Z"

    def test_protocol_versions(self):
        assert self._entry(protocol="h2")["response"]["httpVersion"] == "HTTP/2.0"
        assert self._entry(protocol="h3")["response"]["httpVersion"] == "HTTP/3"

    def test_repeated_headers_split(self):
        result = self._entry(headers={"Set-Cookie": "a=1\nb=2"})
        assert result["response"]["headers"] == [
            {"name": "Set-Cookie", "value": "a=1"},
            {"name": "Set-Cookie", "value": "b=2"},
        ]

    def test_redirect_url(self):
        result = self._entry(status=302, headers={"location": "http://a.test/next"})
        assert result["response"]["redirectURL"] == "http://a.test/next"

    def test_content_text(self):
        entry = NetworkEntry(
            request_id="1",
            request={"url": A, "method": "POST", "postData": "a=1", "headers": {"Content-Type": "text/plain"}},
            timestamp=1.0,
            wall_time=1.0,
            response={"status": 200, "mimeType": "image/png"},
            end_timestamp=1.5,
            content="iVBORw0KGgo=",
            base64_encoded=True,
            finished=True,
            from_cache=True,
        )
        result = har.entry_to_har(entry, "page_0")
        assert result["request"]["postData"] == {"mimeType": "text/plain", "text": "a=1"}
        assert result["request"]["bodySize"] == 3
        assert result["response"]["content"]["text"] == "iVBORw0KGgo="
        assert result["response"]["content"]["encoding"] == "base64"
        assert result["response"]["bodySize"] == -1
        # No ResourceTiming: whole duration is receive
        assert result["timings"]["receive"] == pytest.approx(500.0)
        assert result["timings"]["dns"] == -1


# ── Timing property ──────────────────────────────────────────────────


_offsets = st.lists(st.floats(min_value=0, max_value=5000, allow_nan=False), min_size=7, max_size=7).map(sorted)


class TestTimingProperty:
    @given(offsets=_offsets, queued=st.floats(min_value=0, max_value=1), tail=st.floats(min_value=0, max_value=5))
    @settings(max_examples=200)
    def test_phases_never_negative(self, offsets, queued, tail):
        dns_start, dns_end, connect_start, connect_end, send_start, send_end, headers_end = offsets
        start = 1000.0
        request_time = start + queued
        entry = NetworkEntry(
            request_id="1",
            request={"url": A},
            timestamp=start,
            wall_time=1.0,
            response={
                "timing": {
                    "requestTime": request_time,
                    "dnsStart": dns_start,
                    "dnsEnd": dns_end,
                    "connectStart": connect_start,
                    "connectEnd": connect_end,
                    "sslStart": -1,
                    "sslEnd": -1,
                    "sendStart": send_start,
                    "sendEnd": send_end,
                    "receiveHeadersEnd": headers_end,
                }
            },
            end_timestamp=request_time + headers_end / 1000 + tail,
            finished=True,
        )
        timings = har.entry_timings(entry)
        for name, value in timings.items():
            assert value >= 0 or value == -1, name
        assert har._total_time(timings) >= 0


# ── Save ─────────────────────────────────────────────────────────────


class TestSave:
    def test_save_creates_parents(self, tmp_path):
        report = har.create([_record(0, A, page_events(A))])
        out = har.save(report, tmp_path / "nested" / "out.har")
        assert out.exists()
        assert json.loads(out.read_text(encoding="utf-8")) == report
