"""Live input level for UI feedback and silence detection."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import numpy as np

from .audio_utils import spectrum_level
from .errors import AssistantError
from .recorder import MicrophoneStream

logger = logging.getLogger("sosvoice.level_monitor")


class AudioLevelMonitor:
    def __init__(
        self,
        stream_factory: Callable[[], MicrophoneStream],
        frame_interval_s: float = 1 / 60,
        silence_level: float = 0.15,
        on_level: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._stream_factory = stream_factory
        self._frame_interval_s = frame_interval_s
        self._silence_level = silence_level
        self._on_level = on_level
        self._stream: Optional[MicrophoneStream] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._latest: Optional[np.ndarray] = None
        self._last_sound_at = time.monotonic()
        self.level = 0.0

    @property
    def is_open(self) -> bool:
        return self._stream is not None and self._stream.is_open

    @property
    def stream(self) -> Optional[MicrophoneStream]:
        return self._stream

    @property
    def silence_seconds(self) -> float:
        if not self.is_open:
            return 0.0
        return time.monotonic() - self._last_sound_at

    def open(self) -> MicrophoneStream:
        self.close()
        stream = self._stream_factory()
        self._stream = stream
        try:
            stream.open()
        except AssistantError:
            self.close()
            raise
        self._unsubscribe = stream.subscribe(self._on_block)
        self._last_sound_at = time.monotonic()
        self._task = asyncio.get_running_loop().create_task(self._poll())
        return stream

    def close(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.close()
        self._latest = None
        self.level = 0.0

    def _on_block(self, block: np.ndarray) -> None:
        self._latest = block

    def _tick(self) -> None:
        block = self._latest
        self.level = spectrum_level(block) if block is not None else 0.0
        if self.level >= self._silence_level:
            self._last_sound_at = time.monotonic()
        if self._on_level is not None:
            self._on_level(self.level)

    async def _poll(self) -> None:
        while self._stream is not None:
            self._tick()
            await asyncio.sleep(self._frame_interval_s)
