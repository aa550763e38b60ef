"""
Loads, parses, and caches the spending vocabulary YAML into typed objects.

The vocabulary is the single source of truth for:
  - merchant spelling variants (the only vendor-variation table)
  - category keywords and the merchant fragments counted toward each category
  - superlative keywords (top merchants)
  - anomaly keywords (unusual purchases)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache
from typing import Any, Iterable

import yaml

_VOCABULARY_PATH = Path(__file__).resolve().parent / "spending_vocabulary.yml"


def phrase_pattern(phrase: str) -> re.Pattern[str]:
    """Whole-phrase matcher: *phrase* must not be glued to other word characters."""
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


def earliest_phrase(text: str, patterns: Iterable[tuple[str, re.Pattern[str]]]) -> tuple[int, str] | None:
    """Return ``(position, phrase)`` of the leftmost match; longer phrases win ties."""
    best: tuple[int, int, str] | None = None
    for phrase, pattern in patterns:
        m = pattern.search(text)
        if m is None:
            continue
        candidate = (m.start(), -len(phrase), phrase)
        if best is None or candidate < best:
            best = candidate
    if best is None:
        return None
    return best[0], best[2]


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class MerchantAlias:
    canonical: str
    variants: tuple[str, ...]
    patterns: tuple[tuple[str, re.Pattern[str]], ...] = field(default=(), compare=False, repr=False)


@dataclass(frozen=True)
class CategoryKeywords:
    name: str
    keywords: tuple[str, ...]
    merchants: tuple[str, ...] = ()
    patterns: tuple[tuple[str, re.Pattern[str]], ...] = field(default=(), compare=False, repr=False)


@dataclass
class Vocabulary:
    """Fully parsed spending vocabulary."""

    version: int
    merchants: list[MerchantAlias]
    categories: dict[str, CategoryKeywords]   # keyed by name
    superlatives: tuple[str, ...]
    anomalies: tuple[str, ...]
    _by_variant: dict[str, MerchantAlias] = field(default_factory=dict, repr=False)
    _superlative_patterns: tuple = field(default=(), repr=False)
    _anomaly_patterns: tuple = field(default=(), repr=False)

    def __post_init__(self) -> None:
        self._superlative_patterns = _compile(self.superlatives)
        self._anomaly_patterns = _compile(self.anomalies)
        for alias in self.merchants:
            for variant in alias.variants:
                self._by_variant.setdefault(variant, alias)

    # ── Convenience look-ups ─────────────────────────

    def alias_for(self, normalized: str) -> MerchantAlias | None:
        """Exact lookup of an already-normalised merchant spelling."""
        return self._by_variant.get(normalized)

    def category(self, name: str) -> CategoryKeywords | None:
        return self.categories.get(name)

    def get_category_names(self) -> list[str]:
        return list(self.categories.keys())

    def get_merchant_names(self) -> list[str]:
        return [m.canonical for m in self.merchants]

    # ── Free-text scanning ───────────────────────────

    def find_merchant(self, text: str) -> MerchantAlias | None:
        """Leftmost known merchant mentioned in lower-cased *text*."""
        hit = earliest_phrase(text, (p for m in self.merchants for p in m.patterns))
        return self._by_variant[hit[1]] if hit else None

    def find_category(self, text: str) -> CategoryKeywords | None:
        """Leftmost category keyword mentioned in lower-cased *text*."""
        best: tuple[int, int, str] | None = None
        for cat in self.categories.values():
            hit = earliest_phrase(text, cat.patterns)
            if hit is None:
                continue
            candidate = (hit[0], -len(hit[1]), cat.name)
            if best is None or candidate < best:
                best = candidate
        return self.categories[best[2]] if best else None

    def mentions_superlative(self, text: str) -> bool:
        return earliest_phrase(text, self._superlative_patterns) is not None

    def mentions_anomaly(self, text: str) -> bool:
        return earliest_phrase(text, self._anomaly_patterns) is not None


# ── Parsing helpers ──────────────────────────────────────

def _compile(phrases: Iterable[str]) -> tuple[tuple[str, re.Pattern[str]], ...]:
    return tuple((p, phrase_pattern(p)) for p in phrases)


def _clean(values: Iterable[Any]) -> tuple[str, ...]:
    seen: list[str] = []
    for v in values or []:
        s = " ".join(str(v).lower().split())
        if s and s not in seen:
            seen.append(s)
    return tuple(seen)


def _parse_merchant(raw: dict[str, Any]) -> MerchantAlias:
    variants = _clean(raw.get("variants", []))
    if not variants:
        raise ValueError(f"Merchant entry without variants: {raw!r}")
    return MerchantAlias(canonical=variants[0], variants=variants, patterns=_compile(variants))


def _parse_category(raw: dict[str, Any]) -> CategoryKeywords:
    keywords = _clean(raw.get("keywords", []))
    return CategoryKeywords(
        name=raw["name"].lower(),
        keywords=keywords,
        merchants=_clean(raw.get("merchants", [])),
        patterns=_compile(keywords),
    )


def _parse_vocabulary(raw_yaml: dict[str, Any]) -> Vocabulary:
    merchants = [_parse_merchant(m) for m in raw_yaml.get("merchants", [])]
    categories = {c.name: c for c in (_parse_category(c) for c in raw_yaml.get("categories", []))}
    return Vocabulary(
        version=raw_yaml.get("version", 1),
        merchants=merchants,
        categories=categories,
        superlatives=_clean(raw_yaml.get("superlatives", [])),
        anomalies=_clean(raw_yaml.get("anomalies", [])),
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_vocabulary() -> Vocabulary:
    """Load and cache the spending vocabulary from YAML."""
    with open(_VOCABULARY_PATH, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return _parse_vocabulary(raw)


def parse_vocabulary(raw_yaml: dict[str, Any]) -> Vocabulary:
    """Build a Vocabulary from an already-loaded mapping (tests, alternate tables)."""
    return _parse_vocabulary(raw_yaml)
