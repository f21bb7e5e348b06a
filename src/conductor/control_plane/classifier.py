"""
Deterministic request classification.

``classify_request`` is pure and total: every (description, metadata,
thresholds) triple maps to exactly one tier, evaluated in this order:

1. CRITICAL   irreversible, overrides a prior decision, or hits a risk keyword
2. AMBIGUOUS  confidence below ``min_confidence``
3. TRIVIAL    file estimate <= ``trivial_max_files``
4. SIMPLE     file estimate <= ``simple_max_files``
5. COMPLEX    everything else
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from conductor.domain.models import ComplexityTier, RequestMetadata

DEFAULT_RISK_KEYWORDS: Final[frozenset[str]] = frozenset(
    {
        "auth",
        "authentication",
        "authorization",
        "billing",
        "credential",
        "credentials",
        "encryption",
        "irreversible",
        "migration",
        "payment",
        "payments",
        "secret",
        "secrets",
    }
)

_WORD_RE: Final[re.Pattern[str]] = re.compile(r"[a-z0-9][a-z0-9_-]*")


@dataclass(frozen=True, slots=True)
class ClassifierThresholds:
    trivial_max_files: int = 1
    simple_max_files: int = 3
    min_confidence: float = 0.6
    risk_keywords: frozenset[str] = field(default_factory=lambda: DEFAULT_RISK_KEYWORDS)

    def __post_init__(self) -> None:
        if self.trivial_max_files < 0:
            raise ValueError("trivial_max_files must be >= 0")
        if self.simple_max_files < self.trivial_max_files:
            raise ValueError("simple_max_files must be >= trivial_max_files")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError("min_confidence must be within [0, 1]")
        object.__setattr__(
            self,
            "risk_keywords",
            frozenset(word.strip().lower() for word in self.risk_keywords if word.strip()),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object] | None) -> ClassifierThresholds:
        if not raw:
            return cls()
        defaults = cls()
        keywords = raw.get("risk_keywords")
        extra = raw.get("extra_risk_keywords", ())
        base = defaults.risk_keywords if keywords is None else frozenset(_as_words(keywords))
        return cls(
            trivial_max_files=_option_int(raw, "trivial_max_files", defaults.trivial_max_files),
            simple_max_files=_option_int(raw, "simple_max_files", defaults.simple_max_files),
            min_confidence=_option_float(raw, "min_confidence", defaults.min_confidence),
            risk_keywords=base | frozenset(_as_words(extra)),
        )


@dataclass(frozen=True, slots=True)
class Classification:
    tier: ComplexityTier
    reasons: tuple[str, ...]


def classify_request(
    description: str,
    metadata: RequestMetadata,
    thresholds: ClassifierThresholds | None = None,
) -> Classification:
    limits = thresholds if thresholds is not None else ClassifierThresholds()

    critical: list[str] = []
    if metadata.irreversible:
        critical.append("irreversible")
    if metadata.overrides_prior_decision:
        critical.append("overrides_prior_decision")
    hits = matched_risk_keywords(description, metadata.keywords, limits.risk_keywords)
    if hits:
        critical.append("risk_keywords:" + ",".join(hits))
    if critical:
        return Classification(ComplexityTier.CRITICAL, tuple(critical))

    if metadata.confidence < limits.min_confidence:
        return Classification(
            ComplexityTier.AMBIGUOUS,
            (f"confidence {metadata.confidence:.2f} < {limits.min_confidence:.2f}",),
        )
    estimate = metadata.file_count_estimate
    if estimate <= limits.trivial_max_files:
        return Classification(
            ComplexityTier.TRIVIAL,
            (f"file_count_estimate {estimate} <= {limits.trivial_max_files}",),
        )
    if estimate <= limits.simple_max_files:
        return Classification(
            ComplexityTier.SIMPLE,
            (f"file_count_estimate {estimate} <= {limits.simple_max_files}",),
        )
    return Classification(
        ComplexityTier.COMPLEX,
        (f"file_count_estimate {estimate} > {limits.simple_max_files}",),
    )


def matched_risk_keywords(
    description: str,
    keywords: Iterable[str],
    risk_keywords: frozenset[str],
) -> tuple[str, ...]:
    """Risk keywords present in the description words or the explicit keyword list."""

    words = set(_WORD_RE.findall(description.lower()))
    words.update(keyword.strip().lower() for keyword in keywords)
    return tuple(sorted(words & risk_keywords))


def _option_int(raw: Mapping[str, object], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"classifier.{key} must be an integer")
    return value


def _option_float(raw: Mapping[str, object], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"classifier.{key} must be a number")
    return float(value)


def _as_words(raw: object) -> list[str]:
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ValueError("risk keywords must be a list of strings")
    return [str(item).strip().lower() for item in raw if str(item).strip()]


__all__ = [
    "DEFAULT_RISK_KEYWORDS",
    "Classification",
    "ClassifierThresholds",
    "classify_request",
    "matched_risk_keywords",
]
