"""Microphone capture utilities."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .audio_utils import apply_auto_gain, apply_noise_gate, to_float32
from .config import AudioConfig
from .errors import AssistantError, CapabilityUnavailable, DeviceError, PermissionDenied

logger = logging.getLogger("sosvoice.recorder")

BlockCallback = Callable[[np.ndarray], None]

PERMISSION_MARKERS = ("permission", "denied", "not permitted", "unauthorized")


def _import_sounddevice():
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise CapabilityUnavailable(
            "sounddevice is required for microphone capture.",
            user_message="Microphone capture is not available on this system.",
        ) from exc
    return sd


def list_input_devices() -> List[Dict[str, Any]]:
    sd = _import_sounddevice()
    devices = sd.query_devices()
    return [d for d in devices if d.get("max_input_channels", 0) > 0]


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise DeviceError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
        logger.warning("Input device %r not found, using %s", prefer_name, candidates[0].get("name"))
    return candidates[0]


def find_input_device(prefer_name: Optional[str] = None) -> Dict[str, Any]:
    return select_preferred_device(list_input_devices(), prefer_name=prefer_name)


def classify_device_error(exc: BaseException) -> AssistantError:
    if isinstance(exc, AssistantError):
        return exc
    text = str(exc)
    if any(marker in text.lower() for marker in PERMISSION_MARKERS):
        return PermissionDenied(text, user_message="Microphone access was denied.")
    return DeviceError(text)


@dataclass
class CaptureConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    noise_floor: float = 0.01

    @classmethod
    def from_config(cls, audio: AudioConfig) -> "CaptureConstraints":
        return cls(
            echo_cancellation=audio.echo_cancellation,
            noise_suppression=audio.noise_suppression,
            auto_gain_control=audio.auto_gain_control,
        )

    def apply(self, samples: np.ndarray) -> np.ndarray:
        if self.noise_suppression:
            samples = apply_noise_gate(samples, floor=self.noise_floor)
        if self.auto_gain_control:
            samples = apply_auto_gain(samples)
        return samples


class MicrophoneStream:
    """Exclusive input stream that fans captured blocks out on the event loop.

    Blocks arrive on the audio thread and are handed to subscribers via
    ``call_soon_threadsafe``, so subscribers always run on the loop thread.
    """

    def __init__(
        self,
        sample_rate_hz: int = 16000,
        channels: int = 1,
        blocksize: int = 1024,
        device_name: Optional[str] = None,
        constraints: Optional[CaptureConstraints] = None,
        stream_factory: Optional[Callable[[Callable[..., None]], Any]] = None,
    ) -> None:
        self.sample_rate_hz = sample_rate_hz
        self.channels = channels
        self.blocksize = blocksize
        self.device_name = device_name
        self.constraints = constraints or CaptureConstraints()
        self._stream_factory = stream_factory
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribers: List[BlockCallback] = []

    @classmethod
    def from_config(cls, audio: AudioConfig) -> "MicrophoneStream":
        return cls(
            sample_rate_hz=audio.sample_rate_hz,
            channels=audio.channels,
            blocksize=audio.blocksize,
            device_name=audio.device_name,
            constraints=CaptureConstraints.from_config(audio),
        )

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def subscribe(self, callback: BlockCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def open(self) -> "MicrophoneStream":
        if self._stream is not None:
            return self
        self._loop = asyncio.get_running_loop()
        factory = self._stream_factory or self._open_sounddevice
        try:
            stream = factory(self._on_audio)
        except Exception as exc:
            raise classify_device_error(exc) from exc
        try:
            stream.start()
        except Exception as exc:
            try:
                stream.close()
            except Exception as close_exc:
                logger.debug("Stream close after failed start: %s", close_exc)
            raise classify_device_error(exc) from exc
        self._stream = stream
        logger.info("Microphone open (%s Hz, %s ch)", self.sample_rate_hz, self.channels)
        return self

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._subscribers.clear()
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.debug("Microphone close failed: %s", exc)
        logger.info("Microphone closed")

    def _open_sounddevice(self, callback: Callable[..., None]) -> Any:
        sd = _import_sounddevice()
        if self.constraints.echo_cancellation:
            logger.debug("Echo cancellation requested but not supported by sounddevice")
        device = find_input_device(self.device_name)
        max_in = device.get("max_input_channels", 0)
        channels = min(self.channels, max_in) if max_in else self.channels
        return sd.InputStream(
            samplerate=self.sample_rate_hz,
            channels=channels,
            dtype="float32",
            blocksize=self.blocksize,
            device=device.get("index"),
            callback=callback,
        )

    def _on_audio(self, indata, _frames, _time, status) -> None:
        if status:
            logger.debug("Microphone status: %s", status)
        block = self.constraints.apply(to_float32(np.asarray(indata).copy()))
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, block)
        except RuntimeError:
            # loop closed between the check and the call
            return

    def _dispatch(self, block: np.ndarray) -> None:
        if self._stream is None:
            return
        for callback in list(self._subscribers):
            callback(block)
