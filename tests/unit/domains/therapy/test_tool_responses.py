"""Tests for the JSON envelopes returned by the therapy tools."""

from __future__ import annotations

import json
from datetime import date

from tdi.core.errors import InsufficientDataError, ServiceResult
from tdi.domains.therapy.tools import responses


class TestEnvelopes:
    def test_ok(self):
        assert json.loads(responses.ok({"n": 1})) == {"status": "ok", "data": {"n": 1}}

    def test_ok_keeps_arabic_readable(self):
        assert "العربية" in responses.ok({"label": "العربية"})

    def test_error_from_exception(self):
        exc = InsufficientDataError("Too few peers", "عدد غير كاف", required=3, available=1)
        body = json.loads(responses.from_exception(exc))
        assert body["status"] == "error"
        assert body["error"] == {
            "kind": "insufficient_data",
            "message_en": "Too few peers",
            "message_ar": "عدد غير كاف",
            "details": {"required": 3, "available": 1},
        }

    def test_invalid_input(self):
        body = json.loads(responses.invalid_input(KeyError("subject_id")))
        assert body["error"]["kind"] == "validation"
        assert body["error"]["details"] == {"exception": "KeyError"}
        assert "subject_id" in body["error"]["message_en"]

    def test_from_result_renders_success(self):
        body = json.loads(responses.from_result(ServiceResult.success([1, 2]), len))
        assert body == {"status": "ok", "data": 2}

    def test_from_result_passes_failure_through(self):
        result = ServiceResult.failure("not_found", "missing", "مفقود", recommendation_id="x")
        body = json.loads(responses.from_result(result, len))
        assert body["error"]["kind"] == "not_found"
        assert body["error"]["details"] == {"recommendation_id": "x"}

    def test_non_json_values_stringified(self):
        assert json.loads(responses.ok({"day": date(2025, 1, 6)})) == {
            "status": "ok",
            "data": {"day": "2025-01-06"},
        }
