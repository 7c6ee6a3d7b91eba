import base64
import json

import httpx
import pytest

from estateverify.admission import AdmissionGate
from estateverify.errors import AdmissionClosed, ProviderPermanentError, ProviderTimeout, RateLimited
from estateverify.models import MediaReference
from estateverify.provider import AnalysisKind, AnalysisRequest, GeminiAdapter, extract_json

IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"


def gemini_answer(answer, status_code=200, **extra):
    text = answer if isinstance(answer, str) else json.dumps(answer)
    body = {"candidates": [{"content": {"parts": [{"text": text}]}}], **extra}
    return httpx.Response(status_code, json=body)


class StreamingMedia:
    """Serves one large media body in chunks and counts the bytes actually produced."""

    def __init__(self, size, *, chunk_size=4096, declare_length=False):
        self.size = size
        self.chunk_size = chunk_size
        self.declare_length = declare_length
        self.served = 0
        self.provider_calls = 0

    async def body(self):
        while self.served < self.size:
            chunk = b"\0" * min(self.chunk_size, self.size - self.served)
            self.served += len(chunk)
            yield chunk

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            headers = {"content-type": "image/jpeg"}
            if self.declare_length:
                headers["content-length"] = str(self.size)
            return httpx.Response(200, headers=headers, content=self.body())
        self.provider_calls += 1
        return gemini_answer({"score": 1.0})


class ScriptedTransport:
    """Replays queued responses for provider calls; media downloads always succeed."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.provider_calls = []
        self.media_calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.media_calls.append(str(request.url))
            return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/jpeg"})
        self.provider_calls.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.fixture
def adapter_for(settings):
    def build(transport, *, gate=None, **overrides):
        client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
        return GeminiAdapter(settings.model_copy(update=overrides), gate=gate or AdmissionGate(2), client=client)

    return build


def text_request(**kwargs):
    return AnalysisRequest(task="text_legitimacy", subject="listing", text="Sunny flat near the park.", **kwargs)


@pytest.mark.asyncio
async def test_successful_text_analysis(adapter_for):
    transport = ScriptedTransport(
        gemini_answer(
            "```json\n"
            + json.dumps({"score": 0.82, "issues": [{"code": "vague", "message": "Vague wording", "severity": "low"}]})
            + "\n```",
            modelVersion="gemini-1.5-flash-002",
        )
    )
    adapter = adapter_for(transport)

    result = await adapter.analyze(AnalysisKind.TEXT, text_request(context={"price": 250000}))

    assert result.score == pytest.approx(0.82)
    assert result.model == "gemini-1.5-flash-002"
    assert [(f.code, f.severity.value, f.category) for f in result.findings] == [("vague", "low", "provider")]
    request = transport.provider_calls[0]
    assert request.headers["x-goog-api-key"] == "test-key"
    assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
    body = json.loads(request.content)
    prompt = body["contents"][0]["parts"][0]["text"]
    assert "Sunny flat near the park." in prompt
    assert '"price": 250000' in prompt
    assert body["generationConfig"]["responseMimeType"] == "application/json"


@pytest.mark.asyncio
async def test_transient_failures_are_retried(adapter_for):
    transport = ScriptedTransport(
        httpx.Response(503, text="unavailable"),
        httpx.Response(500, text="oops"),
        gemini_answer({"score": 0.7}),
    )
    adapter = adapter_for(transport)

    result = await adapter.analyze(AnalysisKind.TEXT, text_request())

    assert result.score == pytest.approx(0.7)
    assert len(transport.provider_calls) == 3


@pytest.mark.asyncio
async def test_rate_limit_exhausts_retries(adapter_for):
    transport = ScriptedTransport(httpx.Response(429, text="quota", headers={"retry-after": "30"}))
    adapter = adapter_for(transport)

    with pytest.raises(RateLimited) as excinfo:
        await adapter.analyze(AnalysisKind.TEXT, text_request())

    assert excinfo.value.retry_after == 30.0
    assert excinfo.value.retryable
    assert len(transport.provider_calls) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(adapter_for):
    transport = ScriptedTransport(httpx.Response(400, text="bad request"))
    adapter = adapter_for(transport)

    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.TEXT, text_request())

    assert len(transport.provider_calls) == 1


@pytest.mark.asyncio
async def test_timeouts_surface_as_provider_timeout(adapter_for):
    transport = ScriptedTransport(httpx.ReadTimeout("read timed out"))
    adapter = adapter_for(transport, provider_max_attempts=2)

    with pytest.raises(ProviderTimeout):
        await adapter.analyze(AnalysisKind.TEXT, text_request())

    assert len(transport.provider_calls) == 2


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_calling_out(adapter_for):
    transport = ScriptedTransport(gemini_answer({"score": 1.0}))
    adapter = adapter_for(transport, gemini_api_key=None)

    assert not adapter.configured
    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.TEXT, text_request())
    assert transport.provider_calls == []


@pytest.mark.asyncio
async def test_image_analysis_inlines_media(adapter_for):
    transport = ScriptedTransport(gemini_answer({"score": 0.6, "extracted": {"rooms_visible": 3}}))
    adapter = adapter_for(transport)
    media = (MediaReference(url="https://cdn.example-estate.com/a.jpg"),)

    result = await adapter.analyze(
        AnalysisKind.IMAGE, AnalysisRequest(task="image_relevance", subject="listing", media=media)
    )

    assert result.extracted == {"rooms_visible": 3}
    assert transport.media_calls == ["https://cdn.example-estate.com/a.jpg"]
    parts = json.loads(transport.provider_calls[0].content)["contents"][0]["parts"]
    assert parts[1]["inline_data"] == {
        "mime_type": "image/jpeg",
        "data": base64.b64encode(IMAGE_BYTES).decode("ascii"),
    }


@pytest.mark.asyncio
async def test_image_analysis_without_media_is_rejected(adapter_for):
    adapter = adapter_for(ScriptedTransport(gemini_answer({"score": 1.0})))

    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.IMAGE, AnalysisRequest(task="image_relevance", subject="listing"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}),
        httpx.Response(200, json={"candidates": []}),
        httpx.Response(200, text="not json"),
        gemini_answer("I cannot help with that."),
        gemini_answer({"issues": []}),
        httpx.Response(200, json=[]),
        httpx.Response(200, json="x"),
        httpx.Response(200, json={"candidates": ["oops"]}),
        httpx.Response(200, json={"candidates": {"content": {}}}),
        httpx.Response(200, json={"candidates": [{"content": {"parts": ["hi"]}}]}),
        httpx.Response(200, json={"candidates": [{"content": "hi"}]}),
    ],
)
async def test_unusable_answers_are_permanent(adapter_for, response):
    transport = ScriptedTransport(response)
    adapter = adapter_for(transport)

    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.TEXT, text_request())
    assert len(transport.provider_calls) == 1


def test_extract_json_tolerates_chatter():
    assert extract_json('{"score": 1}') == {"score": 1}
    assert extract_json('Here you go:\n```json\n{"score": 0.5}\n```') == {"score": 0.5}
    assert extract_json('Result: {"score": 0.25, "issues": []} done') == {"score": 0.25, "issues": []}
    with pytest.raises(ProviderPermanentError):
        extract_json("[1, 2, 3]")


@pytest.mark.asyncio
async def test_oversized_media_stops_downloading_early(adapter_for):
    transport = StreamingMedia(size=12_500 * 1024)
    adapter = adapter_for(transport, media_max_bytes=1000)
    media = (MediaReference(url="https://cdn.example-estate.com/huge.jpg"),)

    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.IMAGE, AnalysisRequest(task="image_relevance", subject="listing", media=media))

    assert transport.served <= 2 * transport.chunk_size
    assert transport.provider_calls == 0


@pytest.mark.asyncio
async def test_declared_oversized_media_is_rejected_before_reading(adapter_for):
    transport = StreamingMedia(size=12_500 * 1024, declare_length=True)
    adapter = adapter_for(transport, media_max_bytes=1000)
    media = (MediaReference(url="https://cdn.example-estate.com/huge.jpg"),)

    with pytest.raises(ProviderPermanentError):
        await adapter.analyze(AnalysisKind.IMAGE, AnalysisRequest(task="image_relevance", subject="listing", media=media))

    assert transport.served == 0


@pytest.mark.asyncio
async def test_closed_gate_is_not_retried(adapter_for, monkeypatch):
    gate = AdmissionGate(1)
    gate.close()
    attempts = []
    open_slot = gate.slot

    def counting_slot():
        attempts.append(1)
        return open_slot()

    monkeypatch.setattr(gate, "slot", counting_slot)
    transport = ScriptedTransport(gemini_answer({"score": 1.0}))
    adapter = adapter_for(transport, gate=gate)

    with pytest.raises(AdmissionClosed):
        await adapter.analyze(AnalysisKind.TEXT, text_request())

    assert len(attempts) == 1
    assert transport.provider_calls == []
