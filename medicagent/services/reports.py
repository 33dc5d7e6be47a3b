from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

Category = Literal["cognitive", "mental", "physical", "other"]

_TONE = re.compile(r"tired|exhausted|anxious|calm|confident")
_POSITIVE = re.compile(r"\b(good|better|improved|great)\b")
_NEGATIVE = re.compile(r"\b(bad|worse|terrible|painful)\b")
_REPORT_CANDIDATE = re.compile(
    r"\b(cognitive|memory|brain|focus|mental|mood|anxiety|stress|physical|exercise|sleep|pain|bp"
    r"|blood pressure|heart|summary|report|status)\b"
)


class InteractionRecord(BaseModel):
    user_id: str
    session_id: str | None = None
    role: Literal["user", "assistant"] = "user"
    text: str
    created_at: datetime
    category: Category = "other"
    tone: str | None = None
    sentiment: float | None = Field(default=None, ge=-1.0, le=1.0)


class InteractionStore(Protocol):
    async def save(self, record: InteractionRecord) -> None:
        ...

    async def query(self, user_id: str, start: datetime, end: datetime, *, limit: int = 500) -> list[InteractionRecord]:
        ...


def derive_labels(text: str) -> tuple[Category, str | None, float | None]:
    """Cheap keyword labelling of a single utterance: category, tone and sentiment."""
    lowered = text.lower()
    category: Category = "other"
    if re.search(r"memory|focus|brain|cognitive", lowered):
        category = "cognitive"
    elif re.search(r"mood|anxiety|stress|mental", lowered):
        category = "mental"
    elif re.search(r"pain|sleep|exercise|physical|\bbp\b|blood pressure|heart", lowered):
        category = "physical"
    tone_match = _TONE.search(lowered)
    sentiment: float | None = None
    if _POSITIVE.search(lowered):
        sentiment = 0.6
    elif _NEGATIVE.search(lowered):
        sentiment = -0.6
    return category, tone_match.group(0) if tone_match else None, sentiment


class InMemoryInteractionStore:
    def __init__(self) -> None:
        self._records: dict[str, list[InteractionRecord]] = defaultdict(list)

    async def save(self, record: InteractionRecord) -> None:
        self._records[record.user_id].append(record)

    async def query(self, user_id: str, start: datetime, end: datetime, *, limit: int = 500) -> list[InteractionRecord]:
        matches = [record for record in self._records.get(user_id, []) if start <= record.created_at <= end]
        return matches[-limit:]


def is_report_candidate(text: str) -> bool:
    """True when an utterance carries a health signal worth keeping for later reports."""
    return bool(_REPORT_CANDIDATE.search(text.lower()))


def build_interaction(user_id: str, session_id: str | None, text: str, created_at: datetime) -> InteractionRecord:
    category, tone, sentiment = derive_labels(text)
    return InteractionRecord(
        user_id=user_id,
        session_id=session_id,
        text=text,
        created_at=created_at,
        category=category,
        tone=tone,
        sentiment=sentiment,
    )
