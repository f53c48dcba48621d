"""One fuzzy matcher for every roster.

The past-client roster and the exclusion roster share the same matching
steps; what differs between them is expressed as :class:`MatchRules`
(prefix matching on or off, and an allow-list whose hits are never matched).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from biosignal.models import ExcludedCompany, PastClient
from biosignal.normalizer import comparison_key, contains_words, strip_legal_suffixes

log = logging.getLogger(__name__)

TOP_RANK = 18
TOP_BOOST = 15
TOP_BOOST_FLOOR = 10
TAIL_BOOST = 8

SHORT_WORD_MAX = 4


def past_client_boost(rank: int) -> int:
    """+15 at rank 1 falling linearly to +10 at rank 18, flat +8 beyond."""
    if rank <= TOP_RANK:
        span = TOP_BOOST - TOP_BOOST_FLOOR
        return round(TOP_BOOST - ((rank - 1) / (TOP_RANK - 1)) * span)
    return TAIL_BOOST


@dataclass(frozen=True)
class RosterEntry:
    name: str
    lowered: str
    key: str
    stripped: str
    keywords: frozenset[str]
    priority_rank: int = 0
    boost_score: int = 0
    reason: str = ""

    @classmethod
    def build(cls, name: str, *, priority_rank: int = 0, reason: str = "") -> RosterEntry:
        key = comparison_key(name)
        return cls(
            name=name,
            lowered=_lowered(name),
            key=key,
            stripped=strip_legal_suffixes(name),
            keywords=frozenset(key.split()),
            priority_rank=priority_rank,
            boost_score=past_client_boost(priority_rank) if priority_rank else 0,
            reason=reason,
        )


@dataclass(frozen=True)
class MatchRules:
    prefix_match: bool = False
    allow_list: Roster | None = None


@dataclass(frozen=True)
class _Probe:
    """A candidate name prepared once for all roster comparisons."""

    lowered: str
    key: str
    stripped: str
    keywords: frozenset[str]

    @classmethod
    def of(cls, name: str) -> _Probe:
        key = comparison_key(name)
        return cls(_lowered(name), key, strip_legal_suffixes(name), frozenset(key.split()))


def _lowered(name: str) -> str:
    return " ".join(name.casefold().split())


def _keywords_within(words: frozenset[str], other_text: str, other_words: frozenset[str]) -> bool:
    if not words:
        return False
    for word in words:
        if len(word) <= SHORT_WORD_MAX:
            if not contains_words(word, other_text):
                return False
        elif word not in other_words:
            return False
    return True


def _prefix_related(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a.startswith(b) or b.startswith(a)


@dataclass
class Roster:
    entries: list[RosterEntry]
    rules: MatchRules = field(default_factory=MatchRules)
    label: str = "roster"

    def __post_init__(self) -> None:
        # first entry wins, so the best-ranked past client owns a shared key
        self._by_lowered: dict[str, RosterEntry] = {}
        self._by_key: dict[str, RosterEntry] = {}
        for e in self.entries:
            self._by_lowered.setdefault(e.lowered, e)
            if e.key:
                self._by_key.setdefault(e.key, e)

    def __len__(self) -> int:
        return len(self.entries)

    def match(self, name: str | None) -> RosterEntry | None:
        if not name or not name.strip():
            return None
        if self.rules.allow_list is not None and self.rules.allow_list.match(name) is not None:
            log.debug("%s: %r is allow-listed", self.label, name)
            return None
        probe = _Probe.of(name)

        hit = self._by_lowered.get(probe.lowered)
        if hit is not None:
            return hit
        if probe.key:
            hit = self._by_key.get(probe.key)
            if hit is not None:
                return hit
        for entry in self.entries:
            if (_keywords_within(probe.keywords, entry.key, entry.keywords)
                    or _keywords_within(entry.keywords, probe.key, probe.keywords)):
                return entry
        if self.rules.prefix_match:
            for entry in self.entries:
                if _prefix_related(probe.stripped, entry.stripped):
                    return entry
        return None

    def is_excluded(self, name: str | None) -> bool:
        entry = self.match(name)
        if entry is not None:
            log.debug("%s: %r matched %r (%s)", self.label, name, entry.name, entry.reason or "listed")
        return entry is not None


# ---------------------------------------------------------------------------
# Academic and government organisations
# ---------------------------------------------------------------------------

ACADEMIC_RE = re.compile(
    r"university|universite|college|hospital|medical cent(?:er|re)|health system|health cent(?:er|re)"
    r"|\binstitute\b|school of|\bschool\b|foundation|academy|academie"
    r"|\bNIH\b|\bNCI\b|\bFDA\b|\bCDC\b|\bNHLBI\b|national institute|national cancer|national heart"
    r"|department of|children'?s|memorial|baptist|methodist|presbyterian|kaiser"
    r"|mayo clinic|cleveland clinic|johns hopkins|\bmit\b|caltech|stanford|harvard|\byale\b"
    r"|\.edu\b|research cent(?:er|re)|cancer cent(?:er|re)|\bclinic\b|\bconsortium\b"
    r"|\bsociety\b|\bassociation\b|ministry of|\bgovernment\b|\bfederal\b|national laborator"
    r"|oncology group|cooperative group|intergroupe|sloan kettering|anderson cancer",
    re.IGNORECASE,
)


def is_academic(name: str | None) -> bool:
    """True for universities, hospitals, agencies and similar non-industry sponsors."""
    return bool(name) and ACADEMIC_RE.search(name) is not None


# ---------------------------------------------------------------------------
# Builders and loaders
# ---------------------------------------------------------------------------


def build_past_client_roster(rows: Iterable[tuple[str, int]]) -> Roster:
    """*rows* are ``(name, priority_rank)`` pairs, rank 1 most important."""
    entries = [RosterEntry.build(name, priority_rank=rank) for name, rank in sorted(rows, key=lambda r: r[1])]
    return Roster(entries, MatchRules(prefix_match=False), label="past_clients")


def build_exclusion_roster(rows: Iterable[tuple[str, str]], past_clients: Roster | None = None) -> Roster:
    """*rows* are ``(name, reason)`` pairs; past clients are never excluded."""
    entries = [RosterEntry.build(name, reason=reason) for name, reason in rows]
    return Roster(entries, MatchRules(prefix_match=True, allow_list=past_clients), label="excluded")


def load_past_clients(session: Session) -> Roster:
    rows = session.execute(
        select(PastClient.name, PastClient.priority_rank)
        .where(PastClient.is_active.is_(True))
        .order_by(PastClient.priority_rank)
    ).all()
    roster = build_past_client_roster((name, rank) for name, rank in rows)
    log.info("Loaded %d past clients", len(roster))
    return roster


def load_excluded(session: Session, past_clients: Roster | None = None) -> Roster:
    rows = session.execute(select(ExcludedCompany.name, ExcludedCompany.reason)).all()
    roster = build_exclusion_roster(((name, reason or "") for name, reason in rows), past_clients)
    log.info("Loaded %d excluded companies", len(roster))
    return roster
