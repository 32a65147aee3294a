"""
External Service Client

Async HTTP client for the three external services the pipeline drives:
quality evaluation, bulk fill of missing keys, and single-row refinement.
The services are opaque; only their JSON contracts are relied upon.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from transync.ai.exceptions import (
    QuotaExceededError,
    RateLimitError,
    ServiceError,
    ServiceTimeoutError,
)
from transync.config import API_KEY_PLACEHOLDER, SOURCE_LANGUAGE, load_config
from transync.logger import get_logger

logger = get_logger(__name__)


def get_httpx_timeout(timeout_config: Any) -> httpx.Timeout:
    """
    Convert timeout configuration to httpx.Timeout object.

    Args:
        timeout_config: Either a number (read timeout) or a dict with
            connect, write, read, pool keys

    Returns:
        httpx.Timeout object
    """
    if isinstance(timeout_config, dict):
        return httpx.Timeout(
            connect=timeout_config.get('connect', 10.0),
            write=timeout_config.get('write', 60.0),
            read=timeout_config.get('read', 120.0),
            pool=timeout_config.get('pool', 10.0),
        )
    timeout_value = float(timeout_config) if timeout_config else 120.0
    return httpx.Timeout(
        connect=10.0,
        write=60.0,
        read=timeout_value,
        pool=10.0,
    )


def _error_text(response: httpx.Response) -> str:
    try:
        error_json = response.json()
    except ValueError:
        return response.text[:500] if response.text else "No details"
    if isinstance(error_json, dict) and "error" in error_json:
        error_detail = error_json["error"]
        if isinstance(error_detail, dict):
            return error_detail.get("message", str(error_detail))
        return str(error_detail)
    return str(error_json)[:500]


def handle_http_error(response: httpx.Response, service: str):
    """Raise the exception matching a non-2xx response."""
    status_code = response.status_code
    error_text = _error_text(response)
    details = {"status_code": status_code, "service": service}

    if status_code == 429:
        retry_after = None
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        raise RateLimitError(f"{service} rate limited: {error_text}", retry_after=retry_after,
                             details=details)
    if status_code == 402:
        raise QuotaExceededError(
            f"{service} quota exceeded, add credits or check billing: {error_text}",
            details=details,
        )
    if status_code in (408, 504):
        raise ServiceTimeoutError(f"{service} timed out ({status_code}): {error_text}",
                                  details=details)
    raise ServiceError(f"{service} API error ({status_code}): {error_text}",
                       status_code=status_code, details=details)


@dataclass
class EvaluationBatchResult:
    """One response of the evaluation service, partial or final."""

    should_continue: bool
    last_key: Optional[str] = None
    total_evaluated: int = 0
    total_keys: int = 0
    status: Optional[str] = None
    average_score: Optional[float] = None
    high_quality: int = 0
    medium_quality: int = 0
    low_quality: int = 0
    scores: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.should_continue

    @property
    def failed(self) -> bool:
        return self.is_final and self.status in ("error", "failed")

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EvaluationBatchResult":
        should_continue = bool(data.get("shouldContinue"))
        last_key = data.get("lastKey")
        if should_continue and not isinstance(last_key, str):
            raise ServiceError("Partial evaluation response without lastKey",
                               code="invalid_response", details={"payload": data})
        scores = data.get("results") or []
        if not isinstance(scores, list):
            scores = []
        return cls(
            should_continue=should_continue,
            last_key=last_key,
            total_evaluated=int(data.get("totalEvaluated") or 0),
            total_keys=int(data.get("totalKeys") or 0),
            status=data.get("status"),
            average_score=data.get("averageScore"),
            high_quality=int(data.get("highQuality") or 0),
            medium_quality=int(data.get("mediumQuality") or 0),
            low_quality=int(data.get("lowQuality") or 0),
            scores=[s for s in scores if isinstance(s, dict) and s.get("key")],
        )


@dataclass
class FillResponse:
    translated: int = 0
    failed: int = 0
    count: int = 0


@dataclass
class RefineRequest:
    english_text: str
    current_translation: str
    target_language: str
    target_language_name: str
    context: Optional[str] = None
    page_location: Optional[str] = None
    tov_content: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "englishText": self.english_text,
            "currentTranslation": self.current_translation,
            "targetLanguage": self.target_language,
            "targetLanguageName": self.target_language_name,
            "context": self.context,
            "pageLocation": self.page_location,
            "tovContent": self.tov_content,
        }


class ServiceClient:
    """
    Async client for the evaluation, fill and refine services.

    Use as an async context manager so the underlying connection pool is
    closed::

        async with ServiceClient() as client:
            result = await client.evaluate("fr", start_from_key=None)
    """

    def __init__(self, config: Dict[str, Any] = None, transport: httpx.AsyncBaseTransport = None):
        if config is None:
            config = load_config()
        self.service_config = dict(config.get("service") or {})

        base_url = self.service_config.get("base_url", "")
        api_key = self.service_config.get("api_key")
        headers = {"Content-Type": "application/json"}
        if api_key and api_key != API_KEY_PLACEHOLDER:
            headers["Authorization"] = f"Bearer {api_key}"
        else:
            logger.warning("Service API key not configured, sending unauthenticated requests")

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=get_httpx_timeout(self.service_config.get("timeout", 120)),
            transport=transport,
        )

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        path = self.service_config.get(path_key)
        service = path.strip("/") if path else path_key
        logger.debug(f"POST {path} {list(payload.keys())}")

        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(f"{service} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ServiceError(f"{service} request failed: {e}") from e

        if response.status_code >= 400:
            handle_http_error(response, service)

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceError(f"{service} returned invalid JSON", code="invalid_response") from e
        if not isinstance(data, dict):
            raise ServiceError(f"{service} returned unexpected payload", code="invalid_response",
                               details={"payload": data})
        if data.get("status") == "error":
            raise ServiceError(f"{service} reported an error: {data.get('error', 'unknown error')}",
                               status_code=response.status_code, details={"payload": data})
        return data

    async def evaluate(self, language_code: str, source_language: str = SOURCE_LANGUAGE,
                       start_from_key: Optional[str] = None) -> EvaluationBatchResult:
        """Evaluate the next sub-batch of keys after start_from_key."""
        data = await self._post("evaluate_path", {
            "languageCode": language_code,
            "sourceLanguage": source_language,
            "startFromKey": start_from_key,
        })
        return EvaluationBatchResult.from_payload(data)

    async def translate_keys(self, keys: List[str], target_language: str,
                             source_language: str = SOURCE_LANGUAGE) -> FillResponse:
        """Ask the fill service to translate the given keys; it writes rows itself."""
        data = await self._post("translate_path", {
            "translationKeys": list(keys),
            "targetLanguage": target_language,
            "sourceLanguage": source_language,
        })
        count = int(data.get("count") or 0)
        return FillResponse(
            translated=int(data.get("translated", count) or 0),
            failed=int(data.get("failed") or 0),
            count=count,
        )

    async def refine(self, request: RefineRequest) -> str:
        """Return the refined text for one row."""
        data = await self._post("refine_path", request.to_payload())
        refined = data.get("refinedText")
        if not isinstance(refined, str) or not refined.strip():
            raise ServiceError("refine returned an empty text", code="invalid_response",
                               details={"payload": data})
        return refined.strip()
