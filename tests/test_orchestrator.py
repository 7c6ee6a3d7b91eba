import asyncio

import pytest

from estateverify.errors import InvalidRequestError, ProviderPermanentError, ProviderTimeout
from estateverify.evaluators import (
    CheckEvaluator,
    DocumentEvaluator,
    FormatEvaluator,
    ImageEvaluator,
    TextEvaluator,
    default_evaluators,
)
from estateverify.models import CheckStatus, Decision, ListingRequest, SubjectType
from estateverify.orchestrator import VerificationOrchestrator
from estateverify.rules import RuleChecker


class ExplodingEvaluator(CheckEvaluator):
    name = "exploding"
    subjects = frozenset(SubjectType)

    async def _evaluate(self, request):
        raise RuntimeError("boom")


def orchestrator_for(provider, settings, **kwargs):
    return VerificationOrchestrator(default_evaluators(provider, settings=settings), settings=settings, **kwargs)


@pytest.mark.asyncio
async def test_clean_listing_is_approved(make_provider, settings, listing_payload):
    orchestrator = orchestrator_for(make_provider(default=0.9), settings)

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    assert decision.decision is Decision.APPROVE
    assert decision.combined_score == pytest.approx(0.929)
    assert not decision.degraded
    assert set(decision.per_check) == {"text", "image", "format", "fraud", "consistency", "media_authenticity"}
    assert all(result.status is CheckStatus.PASS for result in decision.per_check.values())


@pytest.mark.asyncio
async def test_embedded_phone_lowers_text_check(make_provider, settings, listing_payload):
    payload = dict(listing_payload, description=listing_payload["description"] + " Call 0912 345 678 for a viewing.")
    orchestrator = orchestrator_for(make_provider(default=0.9), settings)

    decision = await orchestrator.verify(ListingRequest(**payload))

    text = decision.per_check["text"]
    assert text.confidence_score == pytest.approx(0.675)
    assert "contact_phone" in [finding.code for finding in text.findings]
    assert decision.combined_score == pytest.approx(0.876)


@pytest.mark.asyncio
async def test_provider_failure_degrades_but_still_decides(make_provider, settings, listing_payload):
    provider = make_provider(default=0.9, errors={"image_relevance": ProviderTimeout("provider request timed out")})
    orchestrator = orchestrator_for(provider, settings)

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    assert decision.per_check["image"].status is CheckStatus.ERROR
    assert decision.errored_checks == ["image"]
    assert decision.degraded
    assert decision.combined_score == pytest.approx(0.938)
    assert decision.decision is Decision.APPROVE


@pytest.mark.asyncio
async def test_degraded_approval_is_capped_when_configured(make_provider, settings, listing_payload):
    provider = make_provider(default=0.9, errors={"image_relevance": ProviderTimeout("provider request timed out")})
    orchestrator = orchestrator_for(provider, settings.model_copy(update={"cap_degraded_approvals": True}))

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    assert decision.decision is Decision.FLAG
    assert decision.combined_score == pytest.approx(0.938)


@pytest.mark.asyncio
async def test_slow_check_is_cancelled_at_deadline(make_provider, settings, listing_payload):
    provider = make_provider(default=0.9, delays={"consistency": 5.0})
    orchestrator = orchestrator_for(provider, settings, timeout=0.05)

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    consistency = decision.per_check["consistency"]
    assert consistency.status is CheckStatus.ERROR
    assert [finding.code for finding in consistency.findings] == ["check_timeout"]
    assert decision.per_check["text"].status is CheckStatus.PASS
    assert decision.degraded


@pytest.mark.asyncio
async def test_every_check_errored_forces_flag(make_provider, settings, listing_payload):
    failure = ProviderPermanentError("GEMINI_API_KEY is not configured")
    provider = make_provider(errors={"text_legitimacy": failure, "image_relevance": failure})
    orchestrator = VerificationOrchestrator(
        [TextEvaluator(provider, RuleChecker(settings=settings), weight=0.2), ImageEvaluator(provider, weight=0.2)],
        settings=settings,
    )

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    assert decision.decision is Decision.FLAG
    assert decision.combined_score == 0.0
    assert decision.errored_checks == ["text", "image"]


@pytest.mark.asyncio
async def test_unexpected_check_failure_is_isolated(settings, listing_payload):
    orchestrator = VerificationOrchestrator(
        [FormatEvaluator(weight=0.1), ExplodingEvaluator(weight=0.5)],
        settings=settings,
    )

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    exploding = decision.per_check["exploding"]
    assert exploding.status is CheckStatus.ERROR
    assert exploding.findings[0].code == "check_failed"
    assert "boom" in exploding.findings[0].message
    assert decision.combined_score == 1.0


@pytest.mark.asyncio
async def test_no_applicable_check_forces_flag(make_provider, settings, listing_payload):
    orchestrator = VerificationOrchestrator([DocumentEvaluator(make_provider(), weight=0.2)], settings=settings)

    decision = await orchestrator.verify(ListingRequest(**listing_payload))

    assert decision.decision is Decision.FLAG
    assert decision.combined_score == 0.0
    assert decision.per_check == {}


@pytest.mark.asyncio
async def test_checks_run_concurrently(make_provider, settings, listing_payload):
    delays = {task: 0.2 for task in ("text_legitimacy", "image_relevance", "consistency", "media_authenticity")}
    orchestrator = orchestrator_for(make_provider(delays=delays), settings)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await orchestrator.verify(ListingRequest(**listing_payload))

    assert loop.time() - started < 0.6


@pytest.mark.asyncio
async def test_broker_payload_is_routed_by_subject_type(make_provider, settings, broker_payload):
    provider = make_provider(
        default=0.9,
        extracted={"document_ocr": {"full_name": "Maria Gonzalez", "license_number": "RE-2019-4471"}},
    )
    orchestrator = orchestrator_for(provider, settings)

    decision = await orchestrator.verify_payload(dict(broker_payload, subject_type="broker"))

    assert decision.subject_type is SubjectType.BROKER
    assert set(decision.per_check) == {"text", "document", "format", "fraud"}
    assert decision.combined_score == pytest.approx(0.938)
    assert decision.decision is Decision.APPROVE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"subject_type": "listing", "subject_id": "listing-1"},
        {"subject_type": "boat", "subject_id": "boat-1"},
        {"subject_type": "listing", "subject_id": "listing-1", "title": "Flat", "price": -5},
    ],
)
async def test_malformed_payload_is_rejected(make_provider, settings, payload):
    orchestrator = orchestrator_for(make_provider(), settings)

    with pytest.raises(InvalidRequestError) as excinfo:
        await orchestrator.verify_payload(payload)

    assert excinfo.value.errors
    assert excinfo.value.retryable is False


def test_duplicate_check_names_are_rejected(settings):
    with pytest.raises(ValueError):
        VerificationOrchestrator([FormatEvaluator(weight=0.1), FormatEvaluator(weight=0.2)], settings=settings)
