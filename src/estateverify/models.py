from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


class SubjectType(str, Enum):
    LISTING = "listing"
    BROKER = "broker"
    PROPERTY = "property"


class CheckStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    FLAG = "FLAG"
    REJECT = "REJECT"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MediaReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: HttpUrl
    content_type: str | None = None
    caption: str | None = Field(default=None, max_length=500)
    checksum: str | None = Field(default=None, max_length=128)


class RelatedRecord(BaseModel):
    """Another platform record, supplied inline by the caller for conflict detection."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(..., min_length=1)
    subject_type: SubjectType
    address: str | None = None
    price: float | None = Field(default=None, ge=0.0)
    area_sqm: float | None = Field(default=None, gt=0.0)
    owner_name: str | None = None
    license_number: str | None = None
    media_urls: tuple[HttpUrl, ...] = ()
    media_checksums: tuple[str, ...] = ()


class _SubjectRequest(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    request_id: str = Field(default_factory=_new_request_id)
    subject_id: str = Field(..., min_length=1, max_length=128)
    related_records: tuple[RelatedRecord, ...] = Field(default=(), max_length=50)


class ListingRequest(_SubjectRequest):
    subject_type: Literal["listing"] = "listing"
    title: str = Field(..., min_length=1, max_length=300)
    description: str = Field(default="", max_length=20_000)
    price: float = Field(..., ge=0.0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    listing_type: Literal["sale", "rent"] = "sale"
    property_type: str = "apartment"
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: int | None = Field(default=None, ge=0)
    area_sqm: float | None = Field(default=None, ge=0.0)
    address: str | None = None
    city: str | None = None
    media: tuple[MediaReference, ...] = Field(default=(), max_length=20)

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.description}".strip()


class BrokerRequest(_SubjectRequest):
    subject_type: Literal["broker"] = "broker"
    full_name: str = Field(..., min_length=1, max_length=200)
    license_number: str = Field(..., min_length=1, max_length=64)
    agency_name: str | None = None
    email: str | None = None
    phone: str | None = None
    bio: str | None = Field(default=None, max_length=10_000)
    years_experience: int | None = Field(default=None, ge=0)
    documents: tuple[MediaReference, ...] = Field(default=(), max_length=10)


class PropertyRequest(_SubjectRequest):
    subject_type: Literal["property"] = "property"
    address: str = Field(..., min_length=1, max_length=500)
    city: str | None = None
    property_type: str = "apartment"
    area_sqm: float | None = Field(default=None, ge=0.0)
    year_built: int | None = None
    bedrooms: int | None = Field(default=None, ge=0)
    owner_name: str = Field(..., min_length=1, max_length=200)
    title_deed_number: str | None = None
    description: str | None = Field(default=None, max_length=20_000)
    media: tuple[MediaReference, ...] = Field(default=(), max_length=20)
    documents: tuple[MediaReference, ...] = Field(default=(), max_length=10)


VerificationRequest = Annotated[
    Union[ListingRequest, BrokerRequest, PropertyRequest],
    Field(discriminator="subject_type"),
]

request_adapter: TypeAdapter[VerificationRequest] = TypeAdapter(VerificationRequest)


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: Severity = Severity.MEDIUM
    category: str = "general"


class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    status: CheckStatus
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    findings: tuple[Finding, ...] = ()
    execution_time: float = Field(default=0.0, ge=0.0)

    @property
    def errored(self) -> bool:
        return self.status is CheckStatus.ERROR

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "confidence_score": self.confidence_score,
            "findings": [finding.model_dump(mode="json") for finding in self.findings],
            "execution_time": round(self.execution_time, 3),
        }


class VerificationDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    subject_type: SubjectType
    subject_id: str
    decision: Decision
    combined_score: float = Field(..., ge=0.0, le=1.0)
    per_check: dict[str, CheckResult] = Field(default_factory=dict)
    degraded: bool = False
    execution_time: float = 0.0
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def errored_checks(self) -> list[str]:
        return [name for name, result in self.per_check.items() if result.errored]

    def to_payload(self) -> dict[str, Any]:
        """Flat response shape: decision fields followed by one key per check."""
        payload: dict[str, Any] = {
            "request_id": self.request_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "decision": self.decision.value,
            "combined_score": self.combined_score,
            "degraded": self.degraded,
            "execution_time": round(self.execution_time, 3),
            "decided_at": self.decided_at.isoformat(),
        }
        for name, result in self.per_check.items():
            payload[name] = result.to_payload()
        return payload
