"""
External analysis adapter.

`AnalysisProvider` is the contract the evaluators depend on; `GeminiAdapter`
implements it against the Gemini `generateContent` REST endpoint. Every
provider request is bounded by a timeout, admitted through the shared
AdmissionGate, and retried with exponential backoff on transient failures
only. Exhausted retries propagate the typed error to the caller.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .admission import AdmissionGate
from .config import Settings, get_settings
from .errors import (
    ProviderPermanentError,
    ProviderTimeout,
    ProviderTransientError,
    RateLimited,
)
from .models import Finding, MediaReference, Severity
from .prompts import render_prompt

logger = logging.getLogger(__name__)


class AnalysisKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    task: str
    subject: str
    text: str | None = None
    media: tuple[MediaReference, ...] = ()
    context: dict[str, Any] = Field(default_factory=dict)


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    findings: tuple[Finding, ...] = ()
    extracted: dict[str, Any] = Field(default_factory=dict)
    model: str | None = None


class AnalysisProvider(ABC):
    """Legitimacy / consistency assessment per modality."""

    @abstractmethod
    async def analyze(self, kind: AnalysisKind, request: AnalysisRequest) -> AnalysisResult:
        """Raises RateLimited, ProviderTimeout, ProviderTransientError or ProviderPermanentError."""

    async def aclose(self) -> None:
        return None


class GeminiAdapter(AnalysisProvider):
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        gate: AdmissionGate,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._api_key = settings.gemini_api_key
        self._model = settings.gemini_model
        self._endpoint = f"{settings.gemini_base_url.rstrip('/')}/models/{self._model}:generateContent"
        self._timeout = settings.provider_timeout
        self._max_attempts = settings.provider_max_attempts
        self._max_wait = settings.provider_retry_max_wait
        self._backoff = wait_exponential(
            multiplier=settings.provider_retry_min_wait,
            min=settings.provider_retry_min_wait,
            max=settings.provider_retry_max_wait,
        )
        self._max_media = settings.provider_max_media
        self._media_max_bytes = settings.media_max_bytes
        self._gate = gate
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def model(self) -> str:
        return self._model

    async def analyze(self, kind: AnalysisKind, request: AnalysisRequest) -> AnalysisResult:
        if not self._api_key:
            raise ProviderPermanentError("GEMINI_API_KEY is not configured")
        if kind is AnalysisKind.TEXT and not request.text:
            raise ProviderPermanentError("text analysis requires text")
        if kind is not AnalysisKind.TEXT and not request.media:
            raise ProviderPermanentError(f"{kind.value} analysis requires at least one media reference")

        async for attempt in self._retrying():
            with attempt:
                return await self._analyze_once(kind, request)
        raise ProviderTransientError("provider retries exhausted")  # pragma: no cover - reraise=True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # Internal helpers ----------------------------------------------
    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(ProviderTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, min(error.retry_after, self._max_wait))
        return delay

    async def _analyze_once(self, kind: AnalysisKind, request: AnalysisRequest) -> AnalysisResult:
        parts: list[dict[str, Any]] = [
            {"text": render_prompt(request.task, subject=request.subject, text=request.text, context=request.context)}
        ]
        if kind is not AnalysisKind.TEXT:
            for media in request.media[: self._max_media]:
                parts.append(await self._inline_media(media))
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
        }
        async with self._gate.slot():
            try:
                response = await self._client.post(
                    self._endpoint,
                    json=body,
                    headers={"x-goog-api-key": self._api_key or ""},
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as exc:
                raise ProviderTimeout(f"provider request timed out after {self._timeout}s") from exc
            except httpx.TransportError as exc:
                raise ProviderTransientError(f"provider transport error: {exc}") from exc
        self._raise_for_status(response, "provider")
        return self._parse_response(response)

    async def _inline_media(self, media: MediaReference) -> dict[str, Any]:
        url = str(media.url)
        try:
            async with self._client.stream("GET", url, timeout=self._timeout, follow_redirects=True) as response:
                self._raise_for_status(response, "media fetch", detail=url)
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._media_max_bytes:
                    raise ProviderPermanentError(f"media exceeds {self._media_max_bytes} bytes: {url}")
                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self._media_max_bytes:
                        raise ProviderPermanentError(f"media exceeds {self._media_max_bytes} bytes: {url}")
                    chunks.append(chunk)
                content_type = response.headers.get("content-type", "application/octet-stream")
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"media fetch timed out: {url}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"media fetch failed: {url}: {exc}") from exc
        mime_type = media.content_type or content_type
        return {
            "inline_data": {
                "mime_type": mime_type.split(";")[0].strip(),
                "data": base64.b64encode(b"".join(chunks)).decode("ascii"),
            }
        }

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str, *, detail: str | None = None) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        if detail is None:
            detail = response.text[:200]
        if status_code == 429:
            raise RateLimited(f"{what} rate limited: {detail}", retry_after=_retry_after(response))
        if status_code == 408 or status_code >= 500:
            raise ProviderTransientError(f"{what} returned {status_code}: {detail}")
        raise ProviderPermanentError(f"{what} returned {status_code}: {detail}")

    def _parse_response(self, response: httpx.Response) -> AnalysisResult:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderPermanentError("provider returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderPermanentError("provider returned an unexpected response shape")
        feedback = data.get("promptFeedback")
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise ProviderPermanentError(f"provider blocked the prompt: {block_reason}")
        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            raise ProviderPermanentError("provider returned an unexpected response shape")
        if not candidates:
            raise ProviderPermanentError("provider returned no candidates")
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not all(isinstance(part, dict) for part in parts):
            raise ProviderPermanentError("provider returned an unexpected response shape")
        answer = extract_json("".join(str(part.get("text") or "") for part in parts))

        try:
            score = float(answer["score"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderPermanentError("provider answer has no numeric score") from exc
        findings = []
        for issue in answer.get("issues") or []:
            if not isinstance(issue, dict) or not issue.get("message"):
                continue
            findings.append(
                Finding(
                    code=str(issue.get("code") or "provider_issue"),
                    message=str(issue["message"]),
                    severity=_severity(issue.get("severity")),
                    category="provider",
                )
            )
        extracted = answer.get("extracted")
        return AnalysisResult(
            score=round(min(1.0, max(0.0, score)), 3),
            findings=tuple(findings),
            extracted=extracted if isinstance(extracted, dict) else {},
            model=str(data.get("modelVersion") or self._model),
        )


def extract_json(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model answer, tolerating code fences and chatter."""
    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1))
    braces = re.search(r"(\{.*\})", text, re.DOTALL)
    if braces:
        candidates.append(braces.group(1))
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    raise ProviderPermanentError("provider answer is not a JSON object")


def _severity(value: Any) -> Severity:
    try:
        return Severity(str(value).lower())
    except ValueError:
        return Severity.MEDIUM


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None
