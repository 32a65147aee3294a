"""
Tests for the external service client.

Uses httpx.MockTransport, so no network access is needed.
"""

import json

import httpx
import pytest

from transync.ai.client import (
    EvaluationBatchResult,
    RefineRequest,
    ServiceClient,
    get_httpx_timeout,
)
from transync.ai.exceptions import (
    FAILURE_QUOTA,
    FAILURE_RATE_LIMIT,
    QuotaExceededError,
    RateLimitError,
    ServiceError,
    ServiceTimeoutError,
    classify_failure,
)

from conftest import run

CONFIG = {
    "service": {
        "base_url": "https://functions.example.test/v1",
        "api_key": "secret-key",
        "timeout": 30,
        "evaluate_path": "/evaluate-translation-quality",
        "translate_path": "/translate-content",
        "refine_path": "/refine-translation",
    }
}


def make_client(handler, config=CONFIG):
    return ServiceClient(config=config, transport=httpx.MockTransport(handler))


async def call(client, method, *args):
    async with client:
        return await getattr(client, method)(*args)


# =============================================================================
# Request and response contracts
# =============================================================================

class TestContracts:

    def test_evaluate_partial_response(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "shouldContinue": True, "lastKey": "nav.home",
                "totalEvaluated": 50, "totalKeys": 120,
                "results": [{"key": "nav.home", "score": 88}, {"score": 10}],
            })

        result = run(call(make_client(handler), "evaluate", "fr", "en", "cta.signup"))

        assert seen["path"] == "/v1/evaluate-translation-quality"
        assert seen["auth"] == "Bearer secret-key"
        assert seen["body"] == {"languageCode": "fr", "sourceLanguage": "en", "startFromKey": "cta.signup"}
        assert result.should_continue is True
        assert result.last_key == "nav.home"
        assert (result.total_evaluated, result.total_keys) == (50, 120)
        assert result.scores == [{"key": "nav.home", "score": 88}]

    def test_evaluate_final_response(self):
        def handler(request):
            return httpx.Response(200, json={
                "shouldContinue": False, "totalEvaluated": 120, "totalKeys": 120,
                "averageScore": 86.5, "highQuality": 90, "mediumQuality": 20, "lowQuality": 10,
                "status": "completed",
            })

        result = run(call(make_client(handler), "evaluate", "fr"))

        assert result.is_final is True
        assert result.failed is False
        assert result.average_score == 86.5
        assert (result.high_quality, result.medium_quality, result.low_quality) == (90, 20, 10)

    def test_partial_without_last_key_is_invalid(self):
        with pytest.raises(ServiceError) as exc_info:
            EvaluationBatchResult.from_payload({"shouldContinue": True})
        assert exc_info.value.code == "invalid_response"

    def test_translate_keys(self):
        def handler(request):
            body = json.loads(request.content)
            assert body == {"translationKeys": ["a", "b"], "targetLanguage": "de", "sourceLanguage": "en"}
            return httpx.Response(200, json={"success": True, "count": 2, "translated": 1, "failed": 1})

        response = run(call(make_client(handler), "translate_keys", ["a", "b"], "de"))

        assert (response.translated, response.failed, response.count) == (1, 1, 2)

    def test_refine_strips_text(self):
        def handler(request):
            assert json.loads(request.content)["tovContent"] == "friendly"
            return httpx.Response(200, json={"refinedText": "  Bonjour  "})

        request = RefineRequest("Hello", "Salut", "fr", "French", tov_content="friendly")
        assert run(call(make_client(handler), "refine", request)) == "Bonjour"

    def test_refine_empty_text_is_an_error(self):
        def handler(request):
            return httpx.Response(200, json={"refinedText": "   "})

        request = RefineRequest("Hello", "Salut", "fr", "French")
        with pytest.raises(ServiceError):
            run(call(make_client(handler), "refine", request))

    def test_placeholder_key_sends_no_authorization(self):
        config = {"service": {**CONFIG["service"], "api_key": "YOUR_API_KEY_HERE"}}

        def handler(request):
            assert "authorization" not in request.headers
            return httpx.Response(200, json={"count": 0})

        run(call(make_client(handler, config), "translate_keys", [], "de"))


# =============================================================================
# Error mapping
# =============================================================================

class TestErrorMapping:

    def test_429_maps_to_rate_limit_with_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "12"}, json={"error": "slow down"})

        with pytest.raises(RateLimitError) as exc_info:
            run(call(make_client(handler), "evaluate", "fr"))
        assert exc_info.value.retry_after == 12.0
        assert classify_failure(exc_info.value) == FAILURE_RATE_LIMIT

    def test_402_maps_to_quota(self):
        def handler(request):
            return httpx.Response(402, json={"error": {"message": "credits exhausted"}})

        with pytest.raises(QuotaExceededError) as exc_info:
            run(call(make_client(handler), "evaluate", "fr"))
        assert "credits exhausted" in str(exc_info.value)
        assert classify_failure(exc_info.value) == FAILURE_QUOTA

    @pytest.mark.parametrize("status_code", [408, 504])
    def test_gateway_timeouts(self, status_code):
        def handler(request):
            return httpx.Response(status_code, text="upstream timeout")

        with pytest.raises(ServiceTimeoutError):
            run(call(make_client(handler), "evaluate", "fr"))

    def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ServiceTimeoutError):
            run(call(make_client(handler), "evaluate", "fr"))

    def test_server_error(self):
        def handler(request):
            return httpx.Response(500, text="Internal Server Error")

        with pytest.raises(ServiceError) as exc_info:
            run(call(make_client(handler), "evaluate", "fr"))
        assert exc_info.value.status_code == 500

    def test_error_status_in_body(self):
        def handler(request):
            return httpx.Response(200, json={"status": "error", "error": "model unavailable"})

        with pytest.raises(ServiceError, match="model unavailable"):
            run(call(make_client(handler), "evaluate", "fr"))

    def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(ServiceError) as exc_info:
            run(call(make_client(handler), "evaluate", "fr"))
        assert exc_info.value.code == "invalid_response"


def test_timeout_config():
    timeout = get_httpx_timeout(45)
    assert timeout.read == 45.0
    assert timeout.connect == 10.0

    timeout = get_httpx_timeout({"read": 5, "connect": 2})
    assert (timeout.read, timeout.connect, timeout.write) == (5, 2, 60.0)
