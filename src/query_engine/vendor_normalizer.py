"""
Vendor normalizer -- expands a merchant name into every spelling that should
match the same receipts.

Known merchants are expanded from the vocabulary table only; unknown names
get the generic punctuation variants (hyphen -> space, hyphen dropped,
apostrophe dropped).  Both paths always include the normalised input.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from src.query_engine.vocabulary import Vocabulary, load_vocabulary

_WS_RE = re.compile(r"\s+")
_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'"})


@dataclass(frozen=True)
class VendorVariationSet:
    canonical: str
    variants: tuple[str, ...]

    def __bool__(self) -> bool:
        return bool(self.variants)

    def __contains__(self, spelling: object) -> bool:
        return spelling in self.variants


EMPTY_VARIATIONS = VendorVariationSet(canonical="", variants=())


def clean_vendor(name: Any) -> str:
    """Lower-case, trim, unify apostrophes and collapse inner whitespace."""
    if not isinstance(name, str):
        return ""
    return _WS_RE.sub(" ", name.translate(_APOSTROPHES).lower()).strip()


def _punctuation_variants(name: str) -> set[str]:
    out = {name}
    if "-" in name:
        out.add(_WS_RE.sub(" ", name.replace("-", " ")).strip())
        out.add(name.replace("-", ""))
    if "'" in name:
        out.add(name.replace("'", ""))
    return {v for v in out if v}


def normalize(vendor_name: Any, vocabulary: Vocabulary | None = None) -> VendorVariationSet:
    """Return the canonical name and sorted variation set for *vendor_name*.

    Non-string or blank input yields an empty set rather than an error.
    """
    normalized = clean_vendor(vendor_name)
    if not normalized:
        return EMPTY_VARIATIONS

    vocab = vocabulary or load_vocabulary()
    alias = vocab.alias_for(normalized)
    if alias is not None:
        variants = set(alias.variants) | {normalized}
        canonical = alias.canonical
    else:
        variants = _punctuation_variants(normalized)
        canonical = normalized

    return VendorVariationSet(canonical=canonical, variants=tuple(sorted(variants)))
