from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Sequence

from ...schemas.notifications import PlanStatus, StoredPlan
from ...utils.nltime import resolve_zone

_DATE_TOKEN = re.compile(r"(\d{1,2})/(\d{1,2})")
_SCHEDULING_WORDS = re.compile(r"appointment|booking|reminder|notification|report", re.IGNORECASE)

DATE_MATCH_SCORE = 1.0
VOCABULARY_BONUS = 0.1
MAX_AMBIGUOUS_CANDIDATES = 3


class MatchStatus(str, Enum):
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class ScoredPlan:
    record: StoredPlan
    score: float


@dataclass(slots=True)
class MatchResult:
    status: MatchStatus
    match: StoredPlan | None = None
    candidates: list[ScoredPlan] = field(default_factory=list)

    @property
    def notification_id(self) -> str | None:
        return self.match.notification_id if self.match else None


def mentioned_dates(utterance: str) -> list[tuple[int, int]]:
    """Month/day pairs written as ``M/D`` or ``MM/DD``."""
    dates: list[tuple[int, int]] = []
    for month_raw, day_raw in _DATE_TOKEN.findall(utterance):
        month, day = int(month_raw), int(day_raw)
        if 1 <= month <= 12 and 1 <= day <= 31:
            dates.append((month, day))
    return dates


def _local_month_day(iso: str, tz: str | None) -> tuple[int, int] | None:
    try:
        moment = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(resolve_zone(tz))
    return moment.month, moment.day


def score_plan(record: StoredPlan, utterance: str, dates: Sequence[tuple[int, int]], tz: str | None) -> float:
    score = 0.0
    when = record.when_iso()
    if when and dates:
        if _local_month_day(when, tz) in set(dates):
            score += DATE_MATCH_SCORE
    if _SCHEDULING_WORDS.search(utterance):
        score += VOCABULARY_BONUS
    return score


def find_matching_plan(
    utterance: str,
    plans: Sequence[StoredPlan],
    *,
    tz: str | None = None,
) -> MatchResult:
    """Pick the single active plan the utterance refers to by its date."""
    active = [record for record in plans if record.status is not PlanStatus.CANCELED]
    if not active:
        return MatchResult(status=MatchStatus.NOT_FOUND)

    dates = mentioned_dates(utterance)
    if not dates:
        return MatchResult(status=MatchStatus.NOT_FOUND)

    scored = sorted(
        (ScoredPlan(record=record, score=score_plan(record, utterance, dates, tz)) for record in active),
        key=lambda candidate: candidate.score,
        reverse=True,
    )
    top = scored[0]
    if top.score < DATE_MATCH_SCORE:
        return MatchResult(status=MatchStatus.NOT_FOUND, candidates=scored[:MAX_AMBIGUOUS_CANDIDATES])

    ties = [candidate for candidate in scored if candidate.score == top.score]
    if len(ties) > 1:
        return MatchResult(status=MatchStatus.AMBIGUOUS, candidates=ties[:MAX_AMBIGUOUS_CANDIDATES])
    return MatchResult(status=MatchStatus.MATCHED, match=top.record, candidates=[top])
