"""Conversation turns and the confirm/broadcast workflow."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List, Optional, Protocol, Sequence

from .config import SessionConfig
from .errors import BroadcastFailure, ClassifierFailure, SessionStateError
from .location import LocationResolver
from .models import (
    ClassifierReply,
    DetectedCategory,
    EmergencyCase,
    Message,
    Notification,
    Phase,
    Role,
)

logger = logging.getLogger("sosvoice.conversation")


class Classifier(Protocol):
    async def classify(self, messages: Sequence[Message], location: str) -> ClassifierReply:
        ...


class Broadcaster(Protocol):
    async def submit(self, case: EmergencyCase) -> str:
        ...


class ConversationSessionMachine:
    """chat -> confirmation -> broadcasting, with failures falling back to chat.

    Only one classifier call or broadcast may be in flight; turns arriving
    while ``is_processing`` is set are dropped.
    """

    def __init__(
        self,
        classifier: Classifier,
        broadcaster: Broadcaster,
        location: LocationResolver,
        narrate: Callable[[str], None],
        notify: Optional[Callable[[Notification], None]] = None,
        config: Optional[SessionConfig] = None,
        requester_id: Optional[str] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        on_phase_changed: Optional[Callable[[Phase], None]] = None,
    ) -> None:
        self._classifier = classifier
        self._broadcaster = broadcaster
        self._location = location
        self._narrate = narrate
        self._notify = notify
        self._config = config or SessionConfig()
        self._requester_id = requester_id
        self._on_message = on_message
        self._on_phase_changed = on_phase_changed
        self._messages: List[Message] = []
        self.phase = Phase.CHAT
        self.detected_category: Optional[DetectedCategory] = None
        self.pending_category: Optional[DetectedCategory] = None
        self._needs_coordinates = False
        self.is_processing = False
        self.case_id: Optional[str] = None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def transcript_text(self) -> str:
        return "\n".join(m.content for m in self._messages)

    def add_message(self, role: Role, content: str) -> Message:
        message = Message(role=role, content=content)
        self._messages.append(message)
        if self._on_message is not None:
            self._on_message(message)
        return message

    def _say(self, text: str) -> Message:
        message = self.add_message(Role.ASSISTANT, text)
        self._narrate(text)
        return message

    def _set_phase(self, phase: Phase) -> None:
        if phase == self.phase:
            return
        logger.info("Phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        if self._on_phase_changed is not None:
            self._on_phase_changed(phase)

    def _clears_threshold(self, category: Optional[DetectedCategory]) -> bool:
        return category is not None and category.confidence > self._config.confidence_threshold

    def _enter_confirmation(self, category: DetectedCategory) -> None:
        self.pending_category = None
        self._needs_coordinates = False
        self.detected_category = category
        self._set_phase(Phase.CONFIRMATION)

    async def submit_user_turn(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        if self.is_processing:
            logger.debug("Turn dropped: a request is already in flight")
            return False
        if self.phase != Phase.CHAT:
            logger.debug("Turn dropped in phase %s", self.phase.value)
            return False

        self.is_processing = True
        self.add_message(Role.USER, text)
        try:
            reply = await self._classifier.classify(self._messages, self._location.best_address())
        except ClassifierFailure as exc:
            logger.warning("Classifier failed: %s", exc)
            self._say(self._config.classifier_apology)
            return True
        except Exception:
            logger.exception("Unexpected classifier error")
            self._say(self._config.classifier_apology)
            return True
        finally:
            self.is_processing = False

        self._say(reply.assistant_response)
        category = reply.detected_category
        if not self._clears_threshold(category):
            return True
        if self._location.best_address():
            self._enter_confirmation(category)
        else:
            self.pending_category = category
            self._say(self._config.location_prompt)
        return True

    def location_updated(self) -> None:
        if (
            self.phase == Phase.CHAT
            and self.pending_category is not None
            and self._location.best_address()
            and (self._location.location is not None or not self._needs_coordinates)
        ):
            self._enter_confirmation(self.pending_category)

    def decline(self) -> None:
        if self.phase != Phase.CONFIRMATION:
            raise SessionStateError(f"Cannot decline in phase {self.phase.value}")
        self.detected_category = None
        self._set_phase(Phase.CHAT)
        self._say(self._config.decline_prompt)

    async def accept(self) -> Optional[str]:
        if self.phase != Phase.CONFIRMATION or self.detected_category is None:
            raise SessionStateError(f"Cannot accept in phase {self.phase.value}")
        location = self._location.location
        if location is None:
            # back to chat until coordinates arrive
            self.pending_category = self.detected_category
            self._needs_coordinates = True
            self.detected_category = None
            self._set_phase(Phase.CHAT)
            self._say(self._config.coordinates_prompt)
            return None
        address = self._location.best_address()
        if address:
            location = replace(location, address=address)

        category = self.detected_category
        self._set_phase(Phase.BROADCASTING)
        self.is_processing = True
        self._narrate(self._config.confirmation_phrase.format(category=category.name))
        case = EmergencyCase(
            category=category.name,
            description=self.transcript_text() or category.name,
            location=location,
            service_id=category.id,
            requester_id=self._requester_id,
        )
        try:
            case_id = await self._broadcaster.submit(case)
        except BroadcastFailure as exc:
            logger.warning("Broadcast failed: %s", exc)
            self._broadcast_failed(exc)
            return None
        except Exception as exc:
            logger.exception("Unexpected broadcast error")
            self._broadcast_failed(BroadcastFailure(str(exc)))
            return None
        finally:
            self.is_processing = False

        self.case_id = case_id
        logger.info("Emergency case created: %s", case_id)
        return case_id

    def _broadcast_failed(self, exc: BroadcastFailure) -> None:
        self.detected_category = None
        self._set_phase(Phase.CHAT)
        self._say(self._config.broadcast_apology)
        if self._notify is not None:
            self._notify(Notification(exc.title, exc.user_message))
