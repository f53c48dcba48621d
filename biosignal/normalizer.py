"""Organization-name normalization.

Two forms are produced from a raw name:

* a *display form* for people (geographic tail removed, title-cased), and
* a *comparison key* for machines (lower-cased, legal suffixes and industry
  descriptors removed).

Both are idempotent, so feeding an already-normalized name back in is safe.
"""
from __future__ import annotations

import re

# Legal forms after which a ", City, State, Country" tail is treated as geography.
_GEO_TAIL_RE = re.compile(
    r"\b(Inc\.?|Corp\.?|LLC|Ltd\.?|L\.L\.C\.?|PLC|GmbH|AG|NV|BV|SA|Pty|Company|Co\.?)"
    r"\s*,\s+(?!(?:inc|corp|llc|ltd|plc|co)\b).+$",
    re.IGNORECASE,
)
_WORD_RE = re.compile(r"[^\W\d_]+")
_WS_RE = re.compile(r"\s+")

# Title-cased even when written in capitals.
_TITLE_CASE_SUFFIXES = frozenset({"inc", "corp", "ltd", "llc", "llp", "lp", "plc"})
_CASE_EXCEPTIONS = {"gmbh": "GmbH"}

LEGAL_SUFFIXES = frozenset({
    "inc", "incorporated", "corp", "corporation", "llc", "ltd", "limited",
    "lp", "llp", "bv", "nv", "gmbh", "ag", "sa", "co", "company", "plc", "pty",
})
# Left dangling once "& Co" or "and Company" is removed.
_CONNECTORS = frozenset({"and"})

INDUSTRY_WORDS = frozenset({
    "pharmaceuticals", "pharmaceutical", "pharma", "therapeutics", "therapeutic",
    "biosciences", "bioscience", "sciences", "health", "healthcare", "group",
    "holdings", "holding", "biotech", "biotechnology", "biopharma",
    "biopharmaceuticals", "biopharmaceutical", "biologics",
})


def _collapse(value: str) -> str:
    return _WS_RE.sub(" ", value).strip()


def strip_geography(raw: str) -> str:
    """``"Merck & Co., Inc., Rahway, NJ, USA"`` -> ``"Merck & Co., Inc."``."""
    return _GEO_TAIL_RE.sub(r"\1", _collapse(raw))


def _title_word(match: re.Match[str]) -> str:
    word = match.group(0)
    lowered = word.lower()
    if lowered in _CASE_EXCEPTIONS:
        return _CASE_EXCEPTIONS[lowered]
    if len(word) <= 3 and word.isupper() and lowered not in _TITLE_CASE_SUFFIXES:
        return word
    return word[:1].upper() + word[1:].lower()


def display_name(raw: str | None) -> str:
    if not raw:
        return ""
    name = strip_geography(raw).rstrip(", ").strip()
    return _WORD_RE.sub(_title_word, name)


def _tokens(raw: str) -> list[str]:
    text = strip_geography(raw).casefold()
    text = re.sub(r"[.,'’]", "", text)
    text = re.sub(r"[^\w\s]", " ", text)
    return text.split()


def _strip_trailing_legal(tokens: list[str]) -> list[str]:
    end = len(tokens)
    while end and (tokens[end - 1] in LEGAL_SUFFIXES or tokens[end - 1] in _CONNECTORS):
        end -= 1
    return tokens[:end]


def strip_legal_suffixes(raw: str | None) -> str:
    """Lower-cased name with only the (possibly stacked) legal suffixes removed."""
    if not raw:
        return ""
    return " ".join(_strip_trailing_legal(_tokens(raw)))


def comparison_key(raw: str | None) -> str:
    if not raw:
        return ""
    tokens = _strip_trailing_legal(_tokens(raw))
    core = _strip_trailing_legal([t for t in tokens if t not in INDUSTRY_WORDS])
    if not core:
        # "Pharma Inc" keeps its descriptor rather than vanishing.
        return " ".join(tokens)
    return " ".join(core)


def core_keywords(raw: str | None) -> frozenset[str]:
    return frozenset(comparison_key(raw).split())


def contains_words(phrase: str, text: str) -> bool:
    """Whole-word containment: ``"ge"`` is in ``"ge healthcare"`` but not ``"genentech"``."""
    if not phrase:
        return False
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None
