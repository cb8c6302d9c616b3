"""Data models for sosvoice."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Phase(str, Enum):
    CHAT = "chat"
    CONFIRMATION = "confirmation"
    BROADCASTING = "broadcasting"


def new_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    id: str = field(default_factory=new_message_id)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: Optional[str] = None

    def coordinates_text(self) -> str:
        return format_coordinates(self.lat, self.lng)

    def display_text(self) -> str:
        return self.address or self.coordinates_text()


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.6f}, {lng:.6f}"


@dataclass(frozen=True)
class DetectedCategory:
    id: str
    name: str
    confidence: float


@dataclass(frozen=True)
class ClassifierReply:
    assistant_response: str
    detected_category: Optional[DetectedCategory] = None


@dataclass(frozen=True)
class EmergencyCase:
    category: str
    description: str
    location: Location
    service_id: Optional[str] = None
    requester_id: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    level: str = "error"


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool
    confidence: float = 0.0
