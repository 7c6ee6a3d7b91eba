import asyncio
import os
import sys
from pathlib import Path

import pytest

# Ensure project src is on path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (ROOT, SRC):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

# Keep the service offline during tests: no provider key unless a test sets one
os.environ["GEMINI_API_KEY"] = ""

from estateverify.config import Settings  # noqa: E402
from estateverify.provider import AnalysisProvider, AnalysisResult  # noqa: E402


class StubProvider(AnalysisProvider):
    """Scripted provider: per-task scores, errors, delays and extracted fields."""

    def __init__(self, scores=None, *, default=0.9, errors=None, delays=None, extracted=None):
        self.scores = scores or {}
        self.default = default
        self.errors = errors or {}
        self.delays = delays or {}
        self.extracted = extracted or {}
        self.calls = []

    async def analyze(self, kind, request):
        self.calls.append((kind, request.task))
        delay = self.delays.get(request.task)
        if delay:
            await asyncio.sleep(delay)
        error = self.errors.get(request.task)
        if error is not None:
            raise error
        return AnalysisResult(
            score=self.scores.get(request.task, self.default),
            extracted=self.extracted.get(request.task, {}),
        )


@pytest.fixture
def settings():
    return Settings(
        gemini_api_key="test-key",
        provider_retry_min_wait=0,
        provider_retry_max_wait=0,
        provider_max_attempts=3,
        request_timeout=5.0,
    )


@pytest.fixture
def make_provider():
    return StubProvider


@pytest.fixture
def listing_payload():
    return {
        "subject_id": "listing-1001",
        "title": "Bright 2-bedroom apartment near Riverside Park",
        "description": (
            "Renovated apartment on the fourth floor with 2 bedrooms, an open kitchen and a balcony "
            "facing the park. 85 m2 of living space, elevator, storage room in the basement."
        ),
        "price": 450000,
        "currency": "USD",
        "listing_type": "sale",
        "property_type": "apartment",
        "bedrooms": 2,
        "bathrooms": 1,
        "area_sqm": 85,
        "address": "12 Elm Street",
        "city": "Springfield",
        "media": [
            {"url": "https://cdn.example-estate.com/listing-1001/living.jpg", "checksum": "aa11"},
            {"url": "https://cdn.example-estate.com/listing-1001/kitchen.jpg", "checksum": "bb22"},
        ],
    }


@pytest.fixture
def broker_payload():
    return {
        "subject_id": "broker-77",
        "full_name": "Maria Gonzalez",
        "license_number": "RE-2019-4471",
        "agency_name": "Riverside Realty",
        "email": "maria.gonzalez@riverside-realty.com",
        "phone": "+1 555 010 2030",
        "bio": (
            "Licensed agent for eight years, focused on family homes and first-time buyers in the "
            "Springfield area. Member of the regional board of realtors."
        ),
        "years_experience": 8,
        "documents": [{"url": "https://docs.example-estate.com/brokers/77/license.pdf"}],
    }


@pytest.fixture
def property_payload():
    return {
        "subject_id": "property-555",
        "address": "12 Elm Street",
        "city": "Springfield",
        "property_type": "house",
        "area_sqm": 140,
        "year_built": 1998,
        "bedrooms": 3,
        "owner_name": "John Carter",
        "title_deed_number": "TD-88231",
        "description": "Detached house with 3 bedrooms, garden and garage. 140 sqm on two floors.",
        "media": [{"url": "https://cdn.example-estate.com/property-555/front.jpg"}],
        "documents": [{"url": "https://docs.example-estate.com/property-555/deed.pdf"}],
    }
