"""Transcript persistence."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from .models import Location, Message


@dataclass
class TranscriptRecord:
    session_id: str
    started_at: str
    phase: str
    case_id: Optional[str] = None
    location: Optional[Location] = None
    messages: List[Message] = field(default_factory=list)


def build_record(session_id: str, session, started_at: Optional[datetime] = None) -> TranscriptRecord:
    return TranscriptRecord(
        session_id=session_id,
        started_at=(started_at or datetime.now()).isoformat(timespec="seconds"),
        phase=session.phase.value,
        case_id=session.conversation.case_id,
        location=session.location,
        messages=session.messages,
    )


def save_transcript(path: str, record: TranscriptRecord) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(asdict(record), handle, indent=2, default=str, ensure_ascii=False)


def load_transcript(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)
