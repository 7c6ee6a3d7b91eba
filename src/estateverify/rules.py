"""
Deterministic red-flag rules over submitted text and media metadata.

The checker makes no external calls and never raises: malformed input yields
a neutral score so the surrounding check can still produce a result.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import tldextract

from .config import Settings, get_settings
from .models import Finding, MediaReference, Severity

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
MAX_PENALTY = 0.9

# Bundled public suffix snapshot only; the checker must stay offline.
_extract_domain = tldextract.TLDExtract(suffix_list_urls=())

MESSAGING_DOMAINS = frozenset({"wa.me", "whatsapp.com", "t.me", "telegram.me", "m.me", "viber.com", "signal.me"})
STOCK_IMAGE_DOMAINS = frozenset(
    {
        "shutterstock.com",
        "istockphoto.com",
        "gettyimages.com",
        "stock.adobe.com",
        "dreamstime.com",
        "depositphotos.com",
        "123rf.com",
        "alamy.com",
        "pexels.com",
        "unsplash.com",
        "pixabay.com",
    }
)


def host_of(url: str) -> str:
    parts = _extract_domain(url)
    return ".".join(part for part in (parts.subdomain, parts.domain, parts.suffix) if part).lower()


def host_matches(url: str, domains: Iterable[str]) -> bool:
    host = host_of(url)
    if host.startswith("www."):
        host = host[4:]
    return any(host == domain or host.endswith("." + domain) for domain in domains)


@dataclass(frozen=True)
class RuleHit:
    rule: str
    category: str
    penalty: float
    finding: Finding


@dataclass(frozen=True)
class RuleReport:
    score: float
    hits: tuple[RuleHit, ...] = ()
    malformed: bool = False

    @property
    def triggered(self) -> list[str]:
        if self.malformed:
            return ["malformed_input"]
        return [hit.rule for hit in self.hits]

    def findings_for(self, *categories: str) -> list[Finding]:
        return [hit.finding for hit in self.hits if not categories or hit.category in categories]

    def score_for(self, *categories: str) -> float:
        if self.malformed:
            return NEUTRAL_SCORE
        penalty = sum(hit.penalty for hit in self.hits if not categories or hit.category in categories)
        return round(max(0.0, 1.0 - min(MAX_PENALTY, penalty)), 3)


@dataclass
class RuleChecker:
    settings: Settings = field(default_factory=get_settings)

    PHONE_PATTERN = re.compile(r"(?<![\w.])\+?\d[\d\s().-]{6,}\d(?![\w.])")
    EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
    LINK_PATTERN = re.compile(r"(?:https?://|www\.)[^\s<>\"']+|\b(?:wa|t|m)\.me/[^\s<>\"']+", re.IGNORECASE)
    THOUSANDS_PATTERN = re.compile(r"^\d{1,3}(?:[ .]\d{3})+$")
    YEAR_RANGE_PATTERN = re.compile(r"\b(?:19|20)\d{2}\s*[-–/]\s*(?:19|20)\d{2}\b")
    REPEATED_PUNCTUATION = re.compile(r"[!?]{3,}")
    ADVANCE_PAYMENT_PATTERNS = (
        r"\bwire (?:transfer|the (?:money|deposit))\b",
        r"\bwestern union\b",
        r"\bmoney ?gram\b",
        r"\bgift ?cards?\b",
        r"\b(?:bitcoin|btc|crypto(?:currency)?|usdt)\b",
        r"\bdeposit (?:before|prior to) (?:viewing|visit|seeing)\b",
        r"\b(?:i am|i'm) (?:currently )?(?:abroad|overseas|out of the country)\b",
    )
    URGENCY_PATTERNS = (
        r"\bact (?:now|fast)\b",
        r"\btoday only\b",
        r"\burgent(?:ly)?\b",
        r"\bfirst come,? first served\b",
        r"\bwon'?t last\b",
    )

    def check(
        self,
        text: str | None,
        *,
        price: float | None = None,
        listing_type: str | None = None,
        media: Sequence[MediaReference | str] = (),
    ) -> RuleReport:
        try:
            hits = [
                *self._text_rules(text or ""),
                *self._price_rules(price, listing_type),
                *self._media_rules(media),
            ]
        except Exception as exc:
            logger.warning("Rule checker received malformed input: %s", exc, exc_info=self.settings.debug)
            return RuleReport(score=NEUTRAL_SCORE, malformed=True)
        penalty = sum(hit.penalty for hit in hits)
        score = round(max(0.0, 1.0 - min(MAX_PENALTY, penalty)), 3)
        return RuleReport(score=score, hits=tuple(hits))

    # Text -----------------------------------------------------------
    def _text_rules(self, text: str) -> list[RuleHit]:
        if not isinstance(text, str):
            raise TypeError(f"text must be a string, got {type(text).__name__}")
        hits: list[RuleHit] = []
        phones = [
            match
            for match in self.PHONE_PATTERN.findall(self.YEAR_RANGE_PATTERN.sub(" ", text))
            if 8 <= sum(ch.isdigit() for ch in match) <= 15 and not self.THOUSANDS_PATTERN.match(match.strip())
        ]
        if phones:
            hits.append(
                self._hit("contact_phone", "content", 0.25, "Phone number embedded in free text.", Severity.HIGH)
            )
        if self.EMAIL_PATTERN.search(text):
            hits.append(
                self._hit("contact_email", "content", 0.20, "E-mail address embedded in free text.", Severity.HIGH)
            )
        links = self.LINK_PATTERN.findall(text)
        if links:
            messaging = any(host_matches(link, MESSAGING_DOMAINS) for link in links)
            hits.append(
                self._hit(
                    "external_link",
                    "content",
                    0.15,
                    "Link to an off-platform messaging service." if messaging else "External link in free text.",
                    Severity.HIGH if messaging else Severity.MEDIUM,
                )
            )
        if len(text.strip()) < self.settings.min_description_length:
            hits.append(
                self._hit(
                    "short_description",
                    "content",
                    0.15,
                    f"Text shorter than {self.settings.min_description_length} characters.",
                    Severity.LOW,
                )
            )
        letters = [ch for ch in text if ch.isalpha()]
        if len(letters) >= 20:
            ratio = sum(ch.isupper() for ch in letters) / len(letters)
            if ratio > self.settings.max_uppercase_ratio:
                hits.append(
                    self._hit("excessive_uppercase", "content", 0.10, f"Uppercase ratio {ratio:.0%}.", Severity.LOW)
                )
        if self.REPEATED_PUNCTUATION.search(text):
            hits.append(self._hit("excessive_punctuation", "content", 0.05, "Repeated punctuation.", Severity.LOW))
        if any(re.search(pattern, text, re.IGNORECASE) for pattern in self.ADVANCE_PAYMENT_PATTERNS):
            hits.append(
                self._hit(
                    "advance_payment",
                    "fraud",
                    0.30,
                    "Asks for off-platform or untraceable advance payment.",
                    Severity.CRITICAL,
                )
            )
        if any(re.search(pattern, text, re.IGNORECASE) for pattern in self.URGENCY_PATTERNS):
            hits.append(self._hit("urgency_pressure", "fraud", 0.10, "Pressure / urgency wording.", Severity.LOW))
        return hits

    # Price ----------------------------------------------------------
    def _price_rules(self, price: float | None, listing_type: str | None) -> list[RuleHit]:
        if price is None:
            return []
        value = float(price)
        floor = self.settings.rent_price_floor if listing_type == "rent" else self.settings.sale_price_floor
        if value < floor:
            return [
                self._hit(
                    "price_below_floor",
                    "fraud",
                    0.35,
                    f"Price {value:,.0f} is below the sanity floor of {floor:,.0f}.",
                    Severity.HIGH,
                )
            ]
        return []

    # Media ----------------------------------------------------------
    def _media_rules(self, media: Sequence[MediaReference | str]) -> list[RuleHit]:
        urls: list[str] = []
        checksums: list[str] = []
        for item in media:
            if isinstance(item, MediaReference):
                urls.append(str(item.url))
                if item.checksum:
                    checksums.append(item.checksum.lower())
            else:
                urls.append(str(item))
        hits: list[RuleHit] = []
        repeated = [value for value, count in Counter(urls).items() if count > 1]
        repeated += [value for value, count in Counter(checksums).items() if count > 1]
        if repeated:
            hits.append(
                self._hit("duplicate_media", "media", 0.10, f"{len(repeated)} media item(s) repeated.", Severity.LOW)
            )
        stock = [url for url in urls if host_matches(url, STOCK_IMAGE_DOMAINS)]
        if stock:
            hits.append(
                self._hit(
                    "stock_image_host",
                    "media",
                    0.20,
                    f"{len(stock)} media item(s) hosted on stock-photo sites.",
                    Severity.MEDIUM,
                )
            )
        return hits

    @staticmethod
    def _hit(rule: str, category: str, penalty: float, message: str, severity: Severity) -> RuleHit:
        return RuleHit(
            rule=rule,
            category=category,
            penalty=penalty,
            finding=Finding(code=rule, message=message, severity=severity, category=category),
        )
