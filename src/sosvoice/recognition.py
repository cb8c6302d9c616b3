"""Speech recognition engine and controller."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

import numpy as np

from .audio_utils import rms
from .config import RecognitionConfig
from .errors import AssistantError, CapabilityUnavailable, RecognitionError
from .models import RecognitionResult
from .recorder import MicrophoneStream
from .transcriber import load_whisper_model, transcribe_samples

logger = logging.getLogger("sosvoice.recognition")

NO_SPEECH = "no-speech"
ABORTED = "aborted"
AUDIO_CAPTURE = "audio-capture"
ENGINE_FAULT = "engine"

SILENT_ERRORS = (NO_SPEECH, ABORTED)


class RecognitionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    ENDING = "ending"


@dataclass
class RecognitionHandlers:
    on_start: Optional[Callable[[], None]] = None
    on_result: Optional[Callable[[RecognitionResult], None]] = None
    on_error: Optional[Callable[[str, str], None]] = None
    on_end: Optional[Callable[[], None]] = None


class RecognitionEngine(Protocol):
    handlers: Optional[RecognitionHandlers]

    def start(self, stream: MicrophoneStream) -> None:
        ...

    def stop(self) -> None:
        ...

    def abort(self) -> None:
        ...


class WhisperRecognitionEngine:
    """One push-to-talk turn transcribed with faster-whisper.

    Speech is endpointed by block energy: the turn is finalized after
    ``silence_timeout_s`` of quiet following speech, and reports ``no-speech``
    if nothing crosses ``speech_threshold`` within ``no_speech_timeout_s``.
    Handlers are looked up at emit time, so clearing ``handlers`` silences
    the engine immediately.
    """

    def __init__(
        self,
        model,
        sample_rate_hz: int = 16000,
        language: Optional[str] = None,
        speech_threshold: float = 0.02,
        silence_timeout_s: float = 2.0,
        no_speech_timeout_s: float = 8.0,
        max_turn_s: float = 30.0,
        interim_interval_s: float = 1.5,
        check_interval_s: float = 0.1,
        transcribe: Callable[..., tuple] = transcribe_samples,
    ) -> None:
        self.handlers: Optional[RecognitionHandlers] = None
        self._model = model
        self._sample_rate_hz = sample_rate_hz
        self._language = language
        self._speech_threshold = speech_threshold
        self._silence_timeout_s = silence_timeout_s
        self._no_speech_timeout_s = no_speech_timeout_s
        self._max_turn_s = max_turn_s
        self._interim_interval_s = interim_interval_s
        self._check_interval_s = check_interval_s
        self._transcribe = transcribe

        self._chunks: List[np.ndarray] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: List[asyncio.Task] = []
        self._active = False
        self._finalizing = False
        self._heard_speech = False
        self._started_at = 0.0
        self._last_voice_at = 0.0

    @classmethod
    def factory(
        cls, config: RecognitionConfig, sample_rate_hz: int
    ) -> Callable[[], "WhisperRecognitionEngine"]:
        model = load_whisper_model(
            config.whisper_model, device=config.device, compute_type=config.compute_type
        )

        def _create() -> "WhisperRecognitionEngine":
            return cls(
                model,
                sample_rate_hz=sample_rate_hz,
                language=config.language,
                speech_threshold=config.speech_threshold,
                silence_timeout_s=config.silence_timeout_s,
                no_speech_timeout_s=config.no_speech_timeout_s,
                max_turn_s=config.max_turn_s,
                interim_interval_s=config.interim_interval_s,
            )

        return _create

    @property
    def active(self) -> bool:
        return self._active

    def start(self, stream: MicrophoneStream) -> None:
        if self._active:
            raise RecognitionError("invalid-state", "Recognition already started")
        self._active = True
        self._finalizing = False
        self._heard_speech = False
        self._chunks = []
        self._started_at = self._last_voice_at = time.monotonic()
        self._unsubscribe = stream.subscribe(self._on_block)
        self._spawn(self._watch())
        self._emit("on_start")

    def stop(self) -> None:
        if not self._active or self._finalizing:
            return
        if self._heard_speech:
            self._finalize()
        else:
            self._finish()

    def abort(self) -> None:
        if not self._active:
            return
        self._emit("on_error", ABORTED, "Recognition aborted")
        self._finish()

    def _emit(self, name: str, *args) -> None:
        handlers = self.handlers
        if handlers is None:
            return
        callback = getattr(handlers, name)
        if callback is not None:
            callback(*args)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.append(task)
        return task

    def _on_block(self, block: np.ndarray) -> None:
        if not self._active or self._finalizing:
            return
        self._chunks.append(block)
        if rms(block) >= self._speech_threshold:
            self._heard_speech = True
            self._last_voice_at = time.monotonic()

    def _buffer(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros((0,), dtype=np.float32)
        return np.concatenate(self._chunks).astype(np.float32, copy=False)

    async def _watch(self) -> None:
        next_interim = time.monotonic() + self._interim_interval_s
        interim_task: Optional[asyncio.Task] = None
        while self._active and not self._finalizing:
            await asyncio.sleep(self._check_interval_s)
            if not self._active or self._finalizing:
                return
            now = time.monotonic()
            if not self._heard_speech:
                if now - self._started_at >= self._no_speech_timeout_s:
                    self._fail(NO_SPEECH, "No speech detected")
                    return
                continue
            if (
                now - self._last_voice_at >= self._silence_timeout_s
                or now - self._started_at >= self._max_turn_s
            ):
                self._finalize()
                return
            if self._interim_interval_s > 0 and now >= next_interim:
                if interim_task is None or interim_task.done():
                    interim_task = self._spawn(self._run_interim())
                next_interim = now + self._interim_interval_s

    async def _run_interim(self) -> None:
        audio = self._buffer()
        try:
            text, confidence = await asyncio.to_thread(
                self._transcribe, self._model, audio, self._sample_rate_hz, self._language
            )
        except Exception as exc:
            logger.debug("Interim transcription failed: %s", exc)
            return
        if self._active and not self._finalizing and text:
            self._emit("on_result", RecognitionResult(text, is_final=False, confidence=confidence))

    def _finalize(self) -> None:
        if self._finalizing:
            return
        self._finalizing = True
        self._detach_stream()
        self._spawn(self._run_final())

    async def _run_final(self) -> None:
        audio = self._buffer()
        try:
            text, confidence = await asyncio.to_thread(
                self._transcribe, self._model, audio, self._sample_rate_hz, self._language
            )
        except Exception as exc:
            logger.exception("Final transcription failed")
            self._fail(ENGINE_FAULT, str(exc))
            return
        if not self._active:
            return
        if text:
            self._emit("on_result", RecognitionResult(text, is_final=True, confidence=confidence))
        else:
            self._emit("on_error", NO_SPEECH, "No speech recognized")
        self._finish()

    def _fail(self, code: str, message: str) -> None:
        if not self._active:
            return
        self._emit("on_error", code, message)
        self._finish()

    def _detach_stream(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _finish(self) -> None:
        if not self._active:
            return
        self._active = False
        self._detach_stream()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []
        self._chunks = []
        self._emit("on_end")


class SpeechRecognitionController:
    """Owns at most one engine instance and classifies its events."""

    def __init__(
        self,
        engine_factory: Optional[Callable[[], RecognitionEngine]],
        on_interim: Optional[Callable[[str], None]] = None,
        on_final: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
        on_idle: Optional[Callable[[], None]] = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_error = on_error
        self._on_idle = on_idle
        self._engine: Optional[RecognitionEngine] = None
        self.state = RecognitionState.IDLE

    @property
    def supported(self) -> bool:
        return self._engine_factory is not None

    @property
    def engine(self) -> Optional[RecognitionEngine]:
        return self._engine

    @property
    def is_listening(self) -> bool:
        return self.state != RecognitionState.IDLE

    def start(self, stream: MicrophoneStream) -> None:
        if self._engine_factory is None:
            raise CapabilityUnavailable("No speech recognition engine available.")
        self.force_stop()
        self.state = RecognitionState.STARTING
        try:
            engine = self._engine_factory()
        except AssistantError:
            self.state = RecognitionState.IDLE
            raise
        except Exception as exc:
            self.state = RecognitionState.IDLE
            raise CapabilityUnavailable(str(exc)) from exc

        engine.handlers = self._bind(engine)
        self._engine = engine
        try:
            engine.start(stream)
        except Exception as exc:
            self.force_stop()
            if isinstance(exc, AssistantError):
                raise
            raise RecognitionError(AUDIO_CAPTURE, str(exc)) from exc
        logger.info("Recognition started")

    def stop(self) -> None:
        """Ask the engine to finish the turn; a pending final result is still delivered."""
        engine = self._engine
        if engine is None:
            return
        self.state = RecognitionState.ENDING
        engine.stop()

    def force_stop(self) -> None:
        engine = self._detach()
        if engine is None:
            return
        try:
            engine.abort()
        except Exception as exc:
            logger.debug("Engine abort failed: %s", exc)
        logger.info("Recognition force-stopped")

    def _detach(self) -> Optional[RecognitionEngine]:
        engine = self._engine
        self._engine = None
        self.state = RecognitionState.IDLE
        if engine is not None:
            # handlers go first so the abort below cannot report back
            engine.handlers = None
        return engine

    def _bind(self, engine: RecognitionEngine) -> RecognitionHandlers:
        def guard(callback):
            def _wrapper(*args) -> None:
                if self._engine is engine:
                    callback(*args)

            return _wrapper

        return RecognitionHandlers(
            on_start=guard(self._handle_start),
            on_result=guard(self._handle_result),
            on_error=guard(self._handle_error),
            on_end=guard(self._handle_end),
        )

    def _end_turn(self) -> None:
        if self._on_idle is not None:
            self._on_idle()

    def _handle_start(self) -> None:
        self.state = RecognitionState.LISTENING

    def _handle_result(self, result: RecognitionResult) -> None:
        if not result.is_final:
            if self._on_interim is not None:
                self._on_interim(result.transcript)
            return
        engine = self._detach()
        if engine is not None:
            try:
                engine.stop()
            except Exception as exc:
                logger.debug("Engine stop failed: %s", exc)
        text = result.transcript.strip()
        logger.info("Final transcript (%d chars)", len(text))
        if self._on_final is not None:
            self._on_final(text)
        self._end_turn()

    def _handle_error(self, code: str, message: str) -> None:
        self._detach()
        if code in SILENT_ERRORS:
            logger.info("Recognition ended quietly: %s", code)
        else:
            logger.warning("Recognition error %s: %s", code, message)
            if self._on_error is not None:
                self._on_error(RecognitionError(code, message))
        self._end_turn()

    def _handle_end(self) -> None:
        self._detach()
        self._end_turn()
