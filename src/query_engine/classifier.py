"""
Intent classifier -- converts a free-text spending question into a
ResolvedIntent.

Two modes:
  rules              → deterministic keyword scan (default, no API key needed)
  openai / anthropic → LLM-backed slot filling via llm_client, funnelled
                       through the same vendor normalizer and timeframe
                       resolver; any unusable model output falls back to rules

Rule precedence (first match wins):
  1. vendor      -- a known merchant, or "spent ... at <name>"  → VendorSpend
  2. category    -- a category keyword                          → CategorySpend
  3. time        -- a recognised time phrase                    → TimeSpend
  4. anomaly     -- "unusual", "outlier", ...                   → Anomaly
     superlative -- "top", "biggest", ...                       → TopMerchants
  5. default     -- TimeSpend over the default window (fallback=True)
"""
from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from src.core.errors import InvalidInput
from src.core.logging import get_logger
from src.query_engine.models import IntentKind, ResolvedIntent
from src.query_engine.timeframe import SUPPORTED_PHRASES, anchor_for, find_time_phrase, resolve
from src.query_engine.vendor_normalizer import normalize, clean_vendor
from src.query_engine.vocabulary import Vocabulary, load_vocabulary

logger = get_logger(__name__)

DEFAULT_TOP_N = 5
MAX_TOP_N = 50

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'"})

# "how much did I spend at Joe's Diner last month?" → "joe's diner"
_AT_VENDOR_RE = re.compile(
    r"\b(?:spen[dt]|spending|pay|paid|bought|buy|purchases?|shop(?:ped|ping)?|charges?)\b"
    r".*?\bat\s+(?P<vendor>[a-z0-9][a-z0-9&'+.\- ]*?)"
    r"(?=\s+(?:in|during|for|over|this|last|past|previous|since|on|between|today|yesterday|so|ytd)\b"
    r"|[?!,;]|\.(?:\s|$)|$)"
)

_NOT_A_VENDOR_WORDS = {"my", "your", "our", "all", "once", "least", "most", "home", "work", "night", "moment"}

_TOP_N_RE = re.compile(r"\btop\s+(\d{1,3})\b|\b(\d{1,3})\s+(?:biggest|largest|top)\b")


def _normalise_question(text: str) -> str:
    return " ".join(text.translate(_APOSTROPHES).lower().split())


class IntentClassifier:
    """Maps question text to a ResolvedIntent.

    Parameters
    ----------
    vocabulary : Vocabulary, optional
        Merchant / category tables; defaults to the bundled YAML.
    mode : str
        ``rules`` (default), ``openai`` or ``anthropic``.
    default_top_n, max_top_n : int
        Top-merchant count when none is stated, and its upper clamp.
    """

    def __init__(
        self,
        vocabulary: Vocabulary | None = None,
        mode: str = "rules",
        default_top_n: int = DEFAULT_TOP_N,
        max_top_n: int = MAX_TOP_N,
    ):
        self.vocabulary = vocabulary or load_vocabulary()
        self.mode = mode
        self.default_top_n = default_top_n
        self.max_top_n = max_top_n

    # ── Public API ──────────────────────────────────────

    def classify(self, raw_text: Any, now: datetime | None = None) -> ResolvedIntent:
        """Classify *raw_text*; ``now`` anchors the timeframe (defaults to the end of today).

        Raises
        ------
        InvalidInput
            If the text is not a string or is blank.
        """
        if not isinstance(raw_text, str) or not raw_text.strip():
            raise InvalidInput("Question text is empty or not a string")
        anchor = now if now is not None else anchor_for(datetime.now())

        if self.mode == "rules":
            intent = self._classify_rules(raw_text, anchor)
        else:
            intent = self._classify_llm(raw_text, anchor)

        logger.info("Classifier[%s] -> %s", self.mode, intent.model_dump_json(indent=None))
        return intent

    # ── Rule path ───────────────────────────────────────

    def _classify_rules(self, raw_text: str, now: datetime) -> ResolvedIntent:
        q = _normalise_question(raw_text)
        time_phrase = find_time_phrase(q)
        timeframe = resolve(time_phrase, now)

        # 1. Vendor
        vendor = self._extract_vendor(q)
        if vendor:
            return ResolvedIntent(kind=IntentKind.VENDOR_SPEND, vendor=vendor, timeframe=timeframe)

        # 2. Category
        category = self.vocabulary.find_category(q)
        if category is not None:
            return ResolvedIntent(kind=IntentKind.CATEGORY_SPEND, category=category.name, timeframe=timeframe)

        # 3. Time
        if time_phrase is not None:
            return ResolvedIntent(kind=IntentKind.TIME_SPEND, timeframe=timeframe)

        # 4. Anomaly, then superlative
        if self.vocabulary.mentions_anomaly(q):
            return ResolvedIntent(kind=IntentKind.ANOMALY, timeframe=timeframe)
        if self.vocabulary.mentions_superlative(q):
            return ResolvedIntent(kind=IntentKind.TOP_MERCHANTS, timeframe=timeframe, top_n=self._extract_top_n(q))

        # 5. Bare "how much did I spend?"
        return ResolvedIntent(kind=IntentKind.TIME_SPEND, timeframe=timeframe, fallback=True)

    def _extract_vendor(self, q: str) -> str | None:
        """Canonical vendor named in *q*: known merchants first, then "at <name>"."""
        alias = self.vocabulary.find_merchant(q)
        if alias is not None:
            return alias.canonical

        m = _AT_VENDOR_RE.search(q)
        if m is None:
            return None
        candidate = clean_vendor(m.group("vendor"))
        if candidate.startswith("the "):
            candidate = candidate[4:]
        if not candidate or candidate.split()[0] in _NOT_A_VENDOR_WORDS:
            return None
        if find_time_phrase(candidate) == candidate or self.vocabulary.find_category(candidate) is not None:
            return None
        return normalize(candidate, self.vocabulary).canonical or None

    def _extract_top_n(self, q: str) -> int:
        m = _TOP_N_RE.search(q)
        if m is None:
            return self.default_top_n
        n = int(m.group(1) or m.group(2))
        return max(1, min(n, self.max_top_n))

    # ── LLM path ────────────────────────────────────────

    def _build_llm_prompt(self, raw_text: str) -> str:
        return _LLM_PROMPT.format(
            kinds=", ".join(k.value for k in IntentKind),
            categories=", ".join(self.vocabulary.get_category_names()),
            phrases=", ".join(SUPPORTED_PHRASES),
            question=raw_text.strip(),
        )

    def _parse_llm_response(self, text: str, now: datetime) -> ResolvedIntent | None:
        """Turn the model's JSON slots into a ResolvedIntent, or ``None`` if unusable."""
        text = text.strip()
        if text.startswith("```"):
            text = re.sub(r"^```(?:json)?\s*", "", text)
            text = re.sub(r"\s*```$", "", text)

        try:
            data: dict[str, Any] = json.loads(text)
            kind = IntentKind(data.get("kind"))
            timeframe = resolve(data.get("time_phrase"), now)
            vendor = category = top_n = None
            if kind is IntentKind.VENDOR_SPEND:
                vendor = normalize(data.get("vendor"), self.vocabulary).canonical or None
            elif kind is IntentKind.CATEGORY_SPEND:
                category = clean_vendor(data.get("category")) or None
            elif kind is IntentKind.TOP_MERCHANTS:
                raw_n = data.get("top_n")
                top_n = max(1, min(int(raw_n), self.max_top_n)) if raw_n else self.default_top_n
            return ResolvedIntent(kind=kind, vendor=vendor, category=category, top_n=top_n, timeframe=timeframe)
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("LLM returned unusable slots, falling back to rules: %s", exc)
            return None

    def _classify_llm(self, raw_text: str, now: datetime) -> ResolvedIntent:
        from src.query_engine.llm_client import call_llm

        try:
            response = call_llm(self._build_llm_prompt(raw_text), provider=self.mode, system=_LLM_SYSTEM)
        except Exception as exc:
            logger.warning("LLM classification failed, falling back to rules: %s", exc)
            return self._classify_rules(raw_text, now)

        intent = self._parse_llm_response(response, now)
        return intent if intent is not None else self._classify_rules(raw_text, now)


_LLM_SYSTEM = "You are a query planner for a personal receipt tracker. Respond ONLY with JSON."

_LLM_PROMPT = """\
Classify the spending question into a JSON object with these exact fields:

  kind        : string -- one of: {kinds}
  vendor      : string | null -- merchant name, only for VendorSpend
  category    : string | null -- one of: {categories}; only for CategorySpend
  time_phrase : string | null -- one of: {phrases}
  top_n       : int | null -- only for TopMerchants

Question: {question}

JSON:"""


# ── Module-level convenience ────────────────────────────

def classify(raw_text: Any, now: datetime | None = None, mode: str = "rules") -> ResolvedIntent:
    """Classify *raw_text* with the bundled vocabulary."""
    return IntentClassifier(mode=mode).classify(raw_text, now=now)
