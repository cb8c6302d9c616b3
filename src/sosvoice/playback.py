"""Text-to-speech narration."""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections import deque
from typing import Any, Callable, Deque, Iterable, Optional, Protocol, Tuple

from .errors import CapabilityUnavailable

logger = logging.getLogger("sosvoice.playback")

NATURAL_KEYWORDS = ("natural", "google", "microsoft", "premium", "neural")
FEMALE_KEYWORDS = ("female", "maria", "joana", "sofia", "helena", "zira", "aria", "samantha", "victoria")


class SpeechEngine(Protocol):
    def speak(self, text: str, lang: str) -> None:
        ...

    def stop(self) -> None:
        ...

    def is_speaking(self) -> bool:
        ...


def _voice_languages(voice: Any) -> list[str]:
    langs = []
    for value in getattr(voice, "languages", None) or []:
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        langs.append(str(value).strip("\x05").lower().replace("_", "-"))
    return langs


def score_voice(voice: Any, lang: str) -> int:
    base = lang.split("-")[0].lower()
    full = lang.lower()
    name = (getattr(voice, "name", "") or "").lower()
    ident = (getattr(voice, "id", "") or "").lower()
    langs = _voice_languages(voice)

    score = 0
    if any(base in value for value in langs) or base in ident:
        score += 10
    if full in langs:
        score += 5
    if any(keyword in name for keyword in NATURAL_KEYWORDS):
        score += 5
    gender = (getattr(voice, "gender", "") or "").lower()
    if gender == "female" or any(keyword in name for keyword in FEMALE_KEYWORDS):
        score += 8
    return score


def select_voice(voices: Iterable[Any], lang: str) -> Optional[Any]:
    candidates = list(voices)
    if not candidates:
        return None
    return max(candidates, key=lambda voice: score_voice(voice, lang))


def _init_pyttsx3() -> Any:
    import pyttsx3

    return pyttsx3.init()


class Pyttsx3SpeechEngine:
    """pyttsx3 driven from a dedicated worker thread.

    The driver is only touched from the worker. ``stop()`` bumps a generation
    counter; the worker's word callback halts any utterance queued under an
    older generation, and stale queue entries are skipped.
    """

    def __init__(
        self,
        rate: Optional[int] = None,
        init_timeout_s: float = 5.0,
        driver_factory: Callable[[], Any] = _init_pyttsx3,
    ) -> None:
        self._rate = rate
        self._driver_factory = driver_factory
        self._queue: "queue.Queue[Optional[Tuple[str, str, int]]]" = queue.Queue()
        self._speaking = threading.Event()
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._generation = 0
        self._current: Optional[int] = None
        self._engine: Any = None
        self._error: Optional[BaseException] = None
        self._voice_lang: Optional[str] = None
        self._thread = threading.Thread(target=self._run, name="sosvoice-tts", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=init_timeout_s)
        if self._engine is None:
            raise CapabilityUnavailable(
                f"pyttsx3 is required for narration: {self._error}",
                user_message="Voice narration is not available on this system.",
            )

    def _run(self) -> None:
        try:
            engine = self._driver_factory()
        except Exception as exc:  # pragma: no cover - environment-dependent
            self._error = exc
            self._ready.set()
            return
        if self._rate:
            engine.setProperty("rate", self._rate)
        engine.connect("started-word", self._on_word)
        self._engine = engine
        self._ready.set()

        while True:
            item = self._queue.get()
            if item is None:
                break
            text, lang, generation = item
            with self._lock:
                stale = generation != self._generation
                self._current = None if stale else generation
            if stale:
                continue
            self._apply_voice(lang)
            try:
                engine.say(text)
                engine.runAndWait()
            except Exception as exc:
                logger.warning("Speech synthesis error: %s", exc)
            finally:
                with self._lock:
                    self._current = None
                if self._queue.empty():
                    self._speaking.clear()

    def _on_word(self, name, location, length) -> None:
        with self._lock:
            interrupted = self._current is not None and self._current != self._generation
        if interrupted:
            self._engine.stop()

    def _apply_voice(self, lang: str) -> None:
        if lang == self._voice_lang:
            return
        self._voice_lang = lang
        voice = select_voice(self._engine.getProperty("voices") or [], lang)
        if voice is not None:
            self._engine.setProperty("voice", voice.id)
            logger.debug("Using voice %s for %s", getattr(voice, "name", voice.id), lang)

    def speak(self, text: str, lang: str) -> None:
        self._speaking.set()
        with self._lock:
            generation = self._generation
        self._queue.put((text, lang, generation))

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
        self._speaking.clear()

    def is_speaking(self) -> bool:
        return self._speaking.is_set()

    def close(self) -> None:
        self.stop()
        self._queue.put(None)


class SpeechPlaybackController:
    """Serializes narration and polls the engine's speaking flag."""

    def __init__(
        self,
        engine: Optional[SpeechEngine],
        lang: str = "pt-PT",
        poll_interval_s: float = 0.1,
        on_speaking_changed: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._engine = engine
        self._lang = lang
        self._poll_interval_s = poll_interval_s
        self._on_speaking_changed = on_speaking_changed
        self._pending: Deque[str] = deque()
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.speaking = False

    @property
    def available(self) -> bool:
        return self._engine is not None

    def speak(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        if self._engine is None:
            logger.info("Narration (no TTS engine): %s", text)
            return
        self._pending.append(text)
        self._start_next()
        self._refresh()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._poll())

    def stop(self) -> None:
        self._pending.clear()
        if self._engine is not None:
            try:
                self._engine.stop()
            except Exception as exc:
                logger.debug("TTS stop failed: %s", exc)
        self._set_speaking(False)

    def close(self) -> None:
        self.stop()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _start_next(self) -> None:
        if self._engine is None or not self._pending or self._engine.is_speaking():
            return
        self._engine.speak(self._pending.popleft(), self._lang)

    def _refresh(self) -> None:
        busy = bool(self._pending) or (self._engine is not None and self._engine.is_speaking())
        self._set_speaking(busy)

    def _set_speaking(self, value: bool) -> None:
        if value:
            self._idle.clear()
        else:
            self._idle.set()
        if value == self.speaking:
            return
        self.speaking = value
        if self._on_speaking_changed is not None:
            self._on_speaking_changed(value)

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval_s)
            self._start_next()
            self._refresh()
            if not self.speaking:
                return
