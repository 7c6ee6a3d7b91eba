from __future__ import annotations

import logging
import re
import time
import unicodedata
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, ClassVar, Union

import numpy as np

from .config import Settings, get_settings
from .errors import ProviderError, ProviderPermanentError
from .models import (
    BrokerRequest,
    CheckResult,
    CheckStatus,
    Finding,
    ListingRequest,
    PropertyRequest,
    Severity,
    SubjectType,
)
from .provider import AnalysisKind, AnalysisProvider, AnalysisRequest
from .rules import RuleChecker

logger = logging.getLogger(__name__)

Subject = Union[ListingRequest, BrokerRequest, PropertyRequest]

FAIL_BELOW = 0.5


def normalize_text(value: str | None) -> str:
    """Lowercase, strip accents and drop everything but letters and digits."""
    if not value:
        return ""
    value = unicodedata.normalize("NFD", value)
    value = "".join(ch for ch in value if unicodedata.category(ch) != "Mn")
    return "".join(ch for ch in value.lower() if ch.isalnum())


def same_value(declared: str | None, observed: Any) -> bool:
    left, right = normalize_text(declared), normalize_text(str(observed) if observed is not None else None)
    if not left or not right:
        return False
    return left == right or left in right or right in left


def declared_attributes(request: Subject) -> dict[str, Any]:
    if isinstance(request, ListingRequest):
        return {
            "title": request.title,
            "price": request.price,
            "currency": request.currency,
            "listing_type": request.listing_type,
            "property_type": request.property_type,
            "bedrooms": request.bedrooms,
            "bathrooms": request.bathrooms,
            "area_sqm": request.area_sqm,
            "address": request.address,
            "city": request.city,
        }
    if isinstance(request, BrokerRequest):
        return {
            "full_name": request.full_name,
            "agency_name": request.agency_name,
            "license_number": request.license_number,
            "years_experience": request.years_experience,
        }
    return {
        "address": request.address,
        "city": request.city,
        "property_type": request.property_type,
        "area_sqm": request.area_sqm,
        "year_built": request.year_built,
        "bedrooms": request.bedrooms,
        "owner_name": request.owner_name,
    }


def _penalty_factor(penalties: Iterable[float], *, floor: float = 0.0) -> float:
    return max(floor, 1.0 - min(1.0, sum(penalties)))


class CheckEvaluator(ABC):
    """
    One analysis dimension.

    `evaluate` never raises for provider failures: they are turned into an
    ERROR result so a single failing check cannot abort the verification.
    """

    name: ClassVar[str]
    subjects: ClassVar[frozenset[SubjectType]]

    def __init__(self, *, weight: float) -> None:
        if weight <= 0:
            raise ValueError(f"{self.name} weight must be positive")
        self.weight = weight

    def applies(self, request: Subject) -> bool:
        return SubjectType(request.subject_type) in self.subjects

    async def evaluate(self, request: Subject) -> CheckResult:
        started = time.perf_counter()
        try:
            score, findings = await self._evaluate(request)
        except ProviderError as exc:
            logger.warning("[%s] %s check degraded: %s", request.request_id, self.name, exc)
            code = "provider_rejected" if isinstance(exc, ProviderPermanentError) else "provider_unavailable"
            return self.error_result(
                Finding(code=code, message=str(exc) or type(exc).__name__, category="provider"),
                execution_time=time.perf_counter() - started,
            )
        score = round(min(1.0, max(0.0, score)), 3)
        return CheckResult(
            check=self.name,
            status=CheckStatus.FAIL if score < FAIL_BELOW else CheckStatus.PASS,
            confidence_score=score,
            findings=tuple(findings),
            execution_time=time.perf_counter() - started,
        )

    def error_result(self, finding: Finding, *, execution_time: float = 0.0) -> CheckResult:
        return CheckResult(
            check=self.name,
            status=CheckStatus.ERROR,
            confidence_score=0.0,
            findings=(finding,),
            execution_time=execution_time,
        )

    @abstractmethod
    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        """Return the check score in [0, 1] and its findings."""


class TextEvaluator(CheckEvaluator):
    """Provider text legitimacy, penalized by the content rules."""

    name = "text"
    subjects = frozenset({SubjectType.LISTING, SubjectType.BROKER})

    def __init__(self, provider: AnalysisProvider, rules: RuleChecker, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._provider = provider
        self._rules = rules

    def applies(self, request: Subject) -> bool:
        if isinstance(request, BrokerRequest):
            return bool(request.bio)
        return super().applies(request)

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        text = request.text if isinstance(request, ListingRequest) else request.bio or ""
        report = self._rules.check(text)
        analysis = await self._provider.analyze(
            AnalysisKind.TEXT,
            AnalysisRequest(
                task="text_legitimacy",
                subject=request.subject_type,
                text=text,
                context=declared_attributes(request),
            ),
        )
        score = analysis.score * report.score_for("content")
        return score, [*report.findings_for("content"), *analysis.findings]


class ImageEvaluator(CheckEvaluator):
    name = "image"
    subjects = frozenset({SubjectType.LISTING, SubjectType.PROPERTY})

    def __init__(self, provider: AnalysisProvider, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._provider = provider

    def applies(self, request: Subject) -> bool:
        return super().applies(request) and bool(getattr(request, "media", ()))

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        analysis = await self._provider.analyze(
            AnalysisKind.IMAGE,
            AnalysisRequest(
                task="image_relevance",
                subject=request.subject_type,
                media=request.media,
                context=declared_attributes(request),
            ),
        )
        return analysis.score, list(analysis.findings)


class DocumentEvaluator(CheckEvaluator):
    """OCR of supporting documents, cross-checked against the declared identity fields."""

    name = "document"
    subjects = frozenset({SubjectType.BROKER, SubjectType.PROPERTY})

    MISMATCH_PENALTY = 0.35
    UNREADABLE_PENALTY = 0.1

    def __init__(self, provider: AnalysisProvider, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._provider = provider

    def applies(self, request: Subject) -> bool:
        return super().applies(request) and bool(getattr(request, "documents", ()))

    @staticmethod
    def expected_fields(request: Subject) -> dict[str, str | None]:
        if isinstance(request, BrokerRequest):
            return {"full_name": request.full_name, "license_number": request.license_number}
        return {
            "owner_name": request.owner_name,
            "title_deed_number": request.title_deed_number,
            "address": request.address,
        }

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        expected = self.expected_fields(request)
        analysis = await self._provider.analyze(
            AnalysisKind.DOCUMENT,
            AnalysisRequest(
                task="document_ocr",
                subject=request.subject_type,
                media=request.documents,
                context={"extract_fields": list(expected)},
            ),
        )
        findings = list(analysis.findings)
        penalties: list[float] = []
        for field_name, declared in expected.items():
            if not declared:
                continue
            observed = analysis.extracted.get(field_name)
            if observed in (None, ""):
                penalties.append(self.UNREADABLE_PENALTY)
                findings.append(
                    Finding(
                        code="field_unreadable",
                        message=f"'{field_name}' could not be read from the documents.",
                        severity=Severity.LOW,
                        category="document",
                    )
                )
            elif not same_value(declared, observed):
                penalties.append(self.MISMATCH_PENALTY)
                findings.append(
                    Finding(
                        code="field_mismatch",
                        message=f"Declared {field_name} does not match the document ('{observed}').",
                        severity=Severity.HIGH,
                        category="document",
                    )
                )
        return analysis.score * _penalty_factor(penalties, floor=0.1), findings


class FormatEvaluator(CheckEvaluator):
    """Deterministic field-format validation; never calls the provider."""

    name = "format"
    subjects = frozenset(SubjectType)

    VIOLATION_PENALTY = 0.2
    LICENSE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9/-]{3,29}$")
    EMAIL_PATTERN = re.compile(r"^[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}$")
    PHONE_PATTERN = re.compile(r"^\+?[\d\s().-]+$")
    DEED_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 /-]{3,39}$")

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        if isinstance(request, ListingRequest):
            violations = self._listing(request)
        elif isinstance(request, BrokerRequest):
            violations = self._broker(request)
        else:
            violations = self._property(request)
        score = _penalty_factor(self.VIOLATION_PENALTY for _ in violations)
        return score, violations

    def _listing(self, request: ListingRequest) -> list[Finding]:
        violations = []
        if len(request.title) < 10:
            violations.append(self._violation("title_too_short", "Title is shorter than 10 characters."))
        if request.price <= 0:
            violations.append(self._violation("price_missing", "Price must be greater than zero.", Severity.HIGH))
        if not (request.currency.isalpha() and request.currency.isupper()):
            violations.append(self._violation("currency_invalid", f"'{request.currency}' is not an ISO 4217 code."))
        if request.area_sqm is not None and request.area_sqm <= 0:
            violations.append(self._violation("area_invalid", "Surface must be greater than zero."))
        if request.bedrooms is not None and request.bedrooms > 50:
            violations.append(self._violation("bedrooms_implausible", f"{request.bedrooms} bedrooms."))
        if not request.address:
            violations.append(self._violation("address_missing", "No address supplied.", Severity.LOW))
        return violations

    def _broker(self, request: BrokerRequest) -> list[Finding]:
        violations = []
        if not self.LICENSE_PATTERN.match(request.license_number.upper()):
            violations.append(
                self._violation("license_format", f"Licence number '{request.license_number}' is malformed.", Severity.HIGH)
            )
        if request.email and not self.EMAIL_PATTERN.match(request.email):
            violations.append(self._violation("email_format", f"'{request.email}' is not a valid e-mail address."))
        if request.phone:
            digits = sum(ch.isdigit() for ch in request.phone)
            if not self.PHONE_PATTERN.match(request.phone) or not 7 <= digits <= 15:
                violations.append(self._violation("phone_format", f"'{request.phone}' is not a valid phone number."))
        if len(request.full_name.split()) < 2:
            violations.append(self._violation("name_incomplete", "Full name must include first and last name."))
        if request.years_experience is not None and request.years_experience > 70:
            violations.append(self._violation("experience_implausible", f"{request.years_experience} years."))
        return violations

    def _property(self, request: PropertyRequest) -> list[Finding]:
        violations = []
        latest = datetime.now(timezone.utc).year + 3
        if request.year_built is not None and not 1800 <= request.year_built <= latest:
            violations.append(self._violation("year_built_implausible", f"Built in {request.year_built}."))
        if request.area_sqm is not None and request.area_sqm <= 0:
            violations.append(self._violation("area_invalid", "Surface must be greater than zero."))
        if len(request.owner_name) < 2:
            violations.append(self._violation("owner_name_invalid", "Owner name is too short."))
        if request.title_deed_number and not self.DEED_PATTERN.match(request.title_deed_number):
            violations.append(
                self._violation("deed_number_format", f"Title deed number '{request.title_deed_number}' is malformed.")
            )
        return violations

    @staticmethod
    def _violation(code: str, message: str, severity: Severity = Severity.MEDIUM) -> Finding:
        return Finding(code=code, message=message, severity=severity, category="format")


class FraudEvaluator(CheckEvaluator):
    """Fraud rules plus a price-per-area outlier test against inline comparables."""

    name = "fraud"
    subjects = frozenset({SubjectType.LISTING, SubjectType.BROKER})

    MIN_COMPARABLES = 3

    def __init__(self, rules: RuleChecker, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._rules = rules

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        if isinstance(request, ListingRequest):
            report = self._rules.check(request.text, price=request.price, listing_type=request.listing_type)
            findings = report.findings_for("fraud")
            factor = self._market_factor(request, findings)
            return report.score_for("fraud") * factor, findings
        report = self._rules.check(request.bio or "")
        return report.score_for("fraud"), report.findings_for("fraud")

    def _market_factor(self, request: ListingRequest, findings: list[Finding]) -> float:
        if not request.area_sqm or request.price <= 0:
            return 1.0
        comparables = np.array(
            [
                record.price / record.area_sqm
                for record in request.related_records
                if record.subject_type is SubjectType.LISTING
                and record.record_id != request.subject_id
                and record.price
                and record.area_sqm
            ],
            dtype=float,
        )
        if comparables.size < self.MIN_COMPARABLES:
            return 1.0
        median = float(np.median(comparables))
        ratio = (request.price / request.area_sqm) / median
        if ratio < 0.4:
            findings.append(
                Finding(
                    code="price_far_below_market",
                    message=f"Price per m² is {ratio:.0%} of the median of {comparables.size} comparables.",
                    severity=Severity.HIGH,
                    category="fraud",
                )
            )
            return 0.7
        if ratio > 3.0:
            findings.append(
                Finding(
                    code="price_far_above_market",
                    message=f"Price per m² is {ratio:.1f}x the median of {comparables.size} comparables.",
                    severity=Severity.LOW,
                    category="fraud",
                )
            )
            return 0.9
        return 1.0


class ConsistencyEvaluator(CheckEvaluator):
    """Description vs declared attributes: a numeric cross-check and a provider review."""

    name = "consistency"
    subjects = frozenset({SubjectType.LISTING, SubjectType.PROPERTY})

    BEDROOM_PATTERN = re.compile(r"\b(\d{1,2})\s*-?\s*(?:bed(?:room)?s?|br)\b", re.IGNORECASE)
    AREA_PATTERN = re.compile(r"\b(\d[\d,.]*)\s*(?:m2|m²|sqm|sq\.?\s?m|square met(?:er|re)s?)\b", re.IGNORECASE)
    PROPERTY_TYPES = {
        "apartment": {"apartment", "flat"},
        "house": {"house", "detached", "bungalow"},
        "villa": {"villa"},
        "studio": {"studio"},
        "land": {"land", "plot"},
        "office": {"office"},
        "shop": {"shop", "retail"},
        "warehouse": {"warehouse"},
        "townhouse": {"townhouse"},
        "penthouse": {"penthouse"},
    }
    AREA_TOLERANCE = 0.15

    def __init__(self, provider: AnalysisProvider, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._provider = provider

    def applies(self, request: Subject) -> bool:
        return super().applies(request) and bool(getattr(request, "description", None))

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        description = request.description or ""
        findings = self.cross_check(request, description)
        penalties = [0.2 if finding.severity is Severity.HIGH else 0.15 for finding in findings]
        analysis = await self._provider.analyze(
            AnalysisKind.TEXT,
            AnalysisRequest(
                task="consistency",
                subject=request.subject_type,
                text=description,
                context=declared_attributes(request),
            ),
        )
        return analysis.score * _penalty_factor(penalties), [*findings, *analysis.findings]

    def cross_check(self, request: Subject, description: str) -> list[Finding]:
        findings: list[Finding] = []
        bedrooms = getattr(request, "bedrooms", None)
        mentioned_rooms = {int(value) for value in self.BEDROOM_PATTERN.findall(description)}
        if bedrooms is not None and mentioned_rooms and bedrooms not in mentioned_rooms:
            findings.append(
                Finding(
                    code="bedrooms_mismatch",
                    message=f"Description mentions {sorted(mentioned_rooms)} bedrooms, declared {bedrooms}.",
                    severity=Severity.HIGH,
                    category="consistency",
                )
            )
        area = request.area_sqm
        mentioned_areas = [self._parse_number(value) for value in self.AREA_PATTERN.findall(description)]
        mentioned_areas = [value for value in mentioned_areas if value]
        if area and mentioned_areas and all(abs(value - area) / area > self.AREA_TOLERANCE for value in mentioned_areas):
            findings.append(
                Finding(
                    code="area_mismatch",
                    message=f"Description mentions {mentioned_areas[0]:g} m², declared {area:g} m².",
                    severity=Severity.HIGH,
                    category="consistency",
                )
            )
        declared_type = request.property_type.lower()
        if declared_type in self.PROPERTY_TYPES:
            words = set(re.findall(r"[a-z]+", description.lower()))
            mentioned_types = {kind for kind, synonyms in self.PROPERTY_TYPES.items() if words & synonyms}
            if mentioned_types and declared_type not in mentioned_types:
                findings.append(
                    Finding(
                        code="property_type_mismatch",
                        message=f"Described as {', '.join(sorted(mentioned_types))}, declared {declared_type}.",
                        severity=Severity.MEDIUM,
                        category="consistency",
                    )
                )
        return findings

    @staticmethod
    def _parse_number(value: str) -> float | None:
        try:
            return float(value.replace(",", "").rstrip("."))
        except ValueError:
            return None


class MediaAuthenticityEvaluator(CheckEvaluator):
    name = "media_authenticity"
    subjects = frozenset({SubjectType.LISTING, SubjectType.PROPERTY})

    def __init__(self, provider: AnalysisProvider, rules: RuleChecker, *, weight: float) -> None:
        super().__init__(weight=weight)
        self._provider = provider
        self._rules = rules

    def applies(self, request: Subject) -> bool:
        return super().applies(request) and bool(getattr(request, "media", ()))

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        report = self._rules.check("", media=request.media)
        analysis = await self._provider.analyze(
            AnalysisKind.IMAGE,
            AnalysisRequest(task="media_authenticity", subject=request.subject_type, media=request.media),
        )
        return analysis.score * report.score_for("media"), [*report.findings_for("media"), *analysis.findings]


class ConflictEvaluator(CheckEvaluator):
    """Conflicts between the subject and other platform records supplied inline."""

    name = "conflict"
    subjects = frozenset(SubjectType)

    PRICE_DEVIATION = 0.4

    def applies(self, request: Subject) -> bool:
        return super().applies(request) and bool(request.related_records)

    async def _evaluate(self, request: Subject) -> tuple[float, list[Finding]]:
        findings: list[Finding] = []
        penalties: list[float] = []

        def conflict(code: str, message: str, severity: Severity, penalty: float) -> None:
            findings.append(Finding(code=code, message=message, severity=severity, category="conflict"))
            penalties.append(penalty)

        media = getattr(request, "media", ()) + getattr(request, "documents", ())
        own_urls = {str(item.url) for item in media}
        own_checksums = {item.checksum.lower() for item in media if item.checksum}
        address = normalize_text(getattr(request, "address", None))

        for record in request.related_records:
            if record.record_id == request.subject_id:
                continue
            reused = own_urls & {str(url) for url in record.media_urls}
            reused |= own_checksums & {checksum.lower() for checksum in record.media_checksums}
            if reused:
                if isinstance(request, BrokerRequest):
                    conflict(
                        "document_reused",
                        f"{len(reused)} document(s) also attached to {record.record_id}.",
                        Severity.CRITICAL,
                        0.4,
                    )
                else:
                    conflict(
                        "media_reused",
                        f"{len(reused)} media item(s) also used by {record.record_id}.",
                        Severity.HIGH,
                        0.3,
                    )

            if isinstance(request, BrokerRequest):
                if record.license_number and normalize_text(record.license_number) == normalize_text(
                    request.license_number
                ):
                    conflict(
                        "license_in_use",
                        f"Licence {request.license_number} is already registered to {record.record_id}.",
                        Severity.CRITICAL,
                        0.5,
                    )
                continue

            if not address or normalize_text(record.address) != address:
                continue
            if isinstance(request, PropertyRequest):
                if record.owner_name and not same_value(request.owner_name, record.owner_name):
                    conflict(
                        "ownership_conflict",
                        f"{record.record_id} lists the same address under owner '{record.owner_name}'.",
                        Severity.HIGH,
                        0.35,
                    )
            elif record.subject_type is SubjectType.LISTING and record.price and request.price > 0:
                deviation = abs(request.price - record.price) / record.price
                if deviation > self.PRICE_DEVIATION:
                    conflict(
                        "price_conflict",
                        f"{record.record_id} lists the same address at {record.price:,.0f} ({deviation:.0%} apart).",
                        Severity.MEDIUM,
                        0.2,
                    )
        return _penalty_factor(penalties), findings


def default_evaluators(
    provider: AnalysisProvider,
    *,
    rules: RuleChecker | None = None,
    settings: Settings | None = None,
) -> list[CheckEvaluator]:
    settings = settings or get_settings()
    rules = rules or RuleChecker(settings=settings)
    weight = settings.weight_for
    return [
        TextEvaluator(provider, rules, weight=weight("text")),
        ImageEvaluator(provider, weight=weight("image")),
        DocumentEvaluator(provider, weight=weight("document")),
        FormatEvaluator(weight=weight("format")),
        FraudEvaluator(rules, weight=weight("fraud")),
        ConsistencyEvaluator(provider, weight=weight("consistency")),
        MediaAuthenticityEvaluator(provider, rules, weight=weight("media_authenticity")),
        ConflictEvaluator(weight=weight("conflict")),
    ]
