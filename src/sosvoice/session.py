"""The emergency assistant session aggregate."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, TypeVar

import httpx

from .broadcast import EmergencyBroadcastClient
from .classifier import ClassifierClient
from .config import Config
from .conversation import Broadcaster, Classifier, ConversationSessionMachine
from .errors import AssistantError, CapabilityUnavailable, LocationUnavailable, PermissionDenied
from .level_monitor import AudioLevelMonitor
from .location import (
    FixedPositionProvider,
    GeocodingClient,
    IpPositionProvider,
    LocationResolver,
    PositionProvider,
)
from .models import Location, Message, Notification, Phase
from .playback import Pyttsx3SpeechEngine, SpeechEngine, SpeechPlaybackController
from .recognition import RecognitionEngine, SpeechRecognitionController, WhisperRecognitionEngine
from .recorder import MicrophoneStream

logger = logging.getLogger("sosvoice.session")

T = TypeVar("T")


def _log_notification(notification: Notification) -> None:
    logger.warning("%s: %s", notification.title, notification.description)


class EmergencySession:
    """Owns every resource of one open assistant dialog.

    ``close()`` is synchronous and idempotent: it detaches and aborts the
    recognition engine, releases the microphone, cancels the level task,
    halts narration and cancels session tasks.
    """

    def __init__(
        self,
        config: Config,
        *,
        classifier: Classifier,
        broadcaster: Broadcaster,
        resolver: LocationResolver,
        playback: SpeechPlaybackController,
        engine_factory: Optional[Callable[[], RecognitionEngine]],
        microphone_factory: Callable[[], MicrophoneStream],
        notify: Optional[Callable[[Notification], None]] = None,
        on_success: Optional[Callable[[str], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        on_phase_changed: Optional[Callable[[Phase], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_level: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.playback = playback
        self._notify_cb = notify or _log_notification
        self._on_success = on_success
        self._on_close = on_close
        self._on_transcript = on_transcript

        self.monitor = AudioLevelMonitor(
            microphone_factory,
            frame_interval_s=config.audio.frame_interval_s,
            silence_level=config.audio.silence_level,
            on_level=on_level,
        )
        self.recognizer = SpeechRecognitionController(
            engine_factory,
            on_interim=self._on_interim,
            on_final=self._on_final,
            on_error=self._notify_error,
            on_idle=self._release_audio,
        )
        self.conversation = ConversationSessionMachine(
            classifier,
            broadcaster,
            resolver,
            narrate=self.playback.speak,
            notify=self._notify,
            config=config.session,
            requester_id=config.backend.requester_id,
            on_message=on_message,
            on_phase_changed=on_phase_changed,
        )

        self.transcript = ""
        self._tasks: Set[asyncio.Task] = set()
        self._opened = False
        self._success_reported = False
        self._closed = False
        self._closed_event = asyncio.Event()

    async def __aenter__(self) -> "EmergencySession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def phase(self) -> Phase:
        return self.conversation.phase

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    @property
    def is_listening(self) -> bool:
        return self.recognizer.is_listening

    @property
    def is_processing(self) -> bool:
        return self.conversation.is_processing

    @property
    def is_speaking(self) -> bool:
        return self.playback.speaking

    @property
    def level(self) -> float:
        return self.monitor.level

    @property
    def location(self) -> Optional[Location]:
        return self.resolver.location

    async def open(self, locate: bool = True) -> None:
        if self._opened or self._closed:
            return
        self._opened = True
        logger.info("Session opened")
        self.playback.speak(self.config.session.greeting)
        if locate:
            self._spawn(self.locate())

    def _notify(self, notification: Notification) -> None:
        self._notify_cb(notification)

    def _notify_error(self, exc: AssistantError) -> None:
        self._notify(Notification(exc.title, exc.user_message))

    def _spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session task failed", exc_info=exc)

    async def _run_owned(self, coro: Awaitable[T], default: T) -> T:
        """Run ``coro`` as a session task so ``close()`` can cancel it."""
        task = self._spawn(coro)
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._closed:
                return default
            raise

    def start_listening(self) -> bool:
        if self._closed or self.is_processing or self.phase != Phase.CHAT:
            return False
        self.playback.stop()
        if not self.recognizer.supported:
            self._notify_error(CapabilityUnavailable())
            return False
        self.recognizer.force_stop()
        try:
            stream = self.monitor.open()
        except AssistantError as exc:
            logger.warning("Microphone unavailable: %s", exc)
            self.monitor.close()
            self._notify(Notification("Microphone unavailable", exc.user_message))
            return False
        self.transcript = ""
        try:
            self.recognizer.start(stream)
        except AssistantError as exc:
            logger.warning("Recognition failed to start: %s", exc)
            self._release_audio()
            self._notify_error(exc)
            return False
        return True

    def stop_listening(self) -> None:
        self.recognizer.stop()

    def cancel_listening(self) -> None:
        self.recognizer.force_stop()
        self._release_audio()

    def _release_audio(self) -> None:
        self.monitor.close()
        self._set_transcript("")

    def _set_transcript(self, text: str) -> None:
        if text == self.transcript:
            return
        self.transcript = text
        if self._on_transcript is not None:
            self._on_transcript(text)

    def _on_interim(self, text: str) -> None:
        self._set_transcript(text)

    def _on_final(self, text: str) -> None:
        self._set_transcript("")
        if not text or self._closed:
            return
        self._spawn(self.conversation.submit_user_turn(text))

    async def submit_text(self, text: str) -> bool:
        if self._closed:
            return False
        return await self._run_owned(self.conversation.submit_user_turn(text), False)

    def decline(self) -> None:
        self.conversation.decline()

    async def accept(self) -> Optional[str]:
        if self._closed:
            return None
        self.cancel_listening()
        case_id = await self._run_owned(self.conversation.accept(), None)
        if case_id is None or self._closed:
            return case_id
        await self.playback.wait_until_idle(timeout=self.config.session.close_delay_s)
        self.close()
        return case_id

    async def locate(self) -> Optional[Location]:
        try:
            location = await self.resolver.locate_device()
        except (PermissionDenied, LocationUnavailable) as exc:
            logger.warning("Geolocation unavailable: %s", exc)
            self._notify(Notification(LocationUnavailable.title, LocationUnavailable.user_message))
            return None
        self.conversation.location_updated()
        return location

    async def set_address(self, text: str) -> Optional[Location]:
        location = await self.resolver.resolve_typed_address(text)
        self.conversation.location_updated()
        return location

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.recognizer.force_stop()
        self.monitor.close()
        self.playback.close()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self._closed_event.set()
        logger.info("Session closed")
        self._report_success()
        if self._on_close is not None:
            self._on_close()

    def _report_success(self) -> None:
        case_id = self.conversation.case_id
        if case_id is None or self._success_reported:
            return
        self._success_reported = True
        if self._on_success is not None:
            self._on_success(case_id)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()


def load_engine_factory(config: Config) -> Optional[Callable[[], RecognitionEngine]]:
    try:
        return WhisperRecognitionEngine.factory(config.recognition, config.audio.sample_rate_hz)
    except CapabilityUnavailable as exc:
        logger.warning("Speech recognition disabled: %s", exc)
        return None


def load_speech_engine(config: Config) -> Optional[SpeechEngine]:
    try:
        return Pyttsx3SpeechEngine(rate=config.playback.rate)
    except CapabilityUnavailable as exc:
        logger.warning("Narration disabled: %s", exc)
        return None


def build_position_provider(config: Config, public_http: httpx.AsyncClient) -> PositionProvider:
    loc = config.location
    if loc.fixed_lat is not None and loc.fixed_lng is not None:
        return FixedPositionProvider(loc.fixed_lat, loc.fixed_lng)
    return IpPositionProvider(public_http, loc.ip_lookup_url)


def create_session(
    config: Config,
    backend_http: httpx.AsyncClient,
    public_http: httpx.AsyncClient,
    *,
    speech_engine: Optional[SpeechEngine] = None,
    engine_factory: Optional[Callable[[], RecognitionEngine]] = None,
    **callbacks,
) -> EmergencySession:
    """Wire the production collaborators for one session."""
    backend = config.backend
    resolver = LocationResolver.from_config(
        config.location,
        build_position_provider(config, public_http),
        GeocodingClient(backend_http, backend.geocode_path),
    )
    playback = SpeechPlaybackController(
        speech_engine,
        lang=config.playback.lang,
        poll_interval_s=config.playback.poll_interval_s,
        on_speaking_changed=callbacks.pop("on_speaking_changed", None),
    )
    return EmergencySession(
        config,
        classifier=ClassifierClient(backend_http, backend.classifier_path),
        broadcaster=EmergencyBroadcastClient(backend_http, backend.broadcast_path),
        resolver=resolver,
        playback=playback,
        engine_factory=engine_factory,
        microphone_factory=lambda: MicrophoneStream.from_config(config.audio),
        **callbacks,
    )
