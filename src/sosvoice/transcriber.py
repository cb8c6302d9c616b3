"""Transcription with Faster-Whisper."""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Tuple

import numpy as np

from .errors import CapabilityUnavailable

logger = logging.getLogger("sosvoice.transcriber")

WHISPER_SAMPLE_RATE = 16000

_MODELS: Dict[Tuple[str, Optional[str], Optional[str]], object] = {}


def load_whisper_model(
    model_name: str = "small",
    device: str | None = None,
    compute_type: str | None = None,
):
    key = (model_name, device, compute_type)
    if key in _MODELS:
        return _MODELS[key]
    try:
        from faster_whisper import WhisperModel
    except Exception as exc:  # pragma: no cover - optional dependency
        raise CapabilityUnavailable(
            "faster-whisper is required for transcription."
        ) from exc

    kwargs = {}
    if device:
        kwargs["device"] = device
    if compute_type:
        kwargs["compute_type"] = compute_type
    try:
        model = WhisperModel(model_name, **kwargs)
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise CapabilityUnavailable(
            f"Whisper model {model_name!r} failed to load: {exc}"
        ) from exc
    logger.info("Loaded whisper model %s", model_name)
    _MODELS[key] = model
    return model


def resample(samples: np.ndarray, source_rate: int, target_rate: int = WHISPER_SAMPLE_RATE) -> np.ndarray:
    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    duration = samples.size / float(source_rate)
    target_size = max(1, int(round(duration * target_rate)))
    source_x = np.linspace(0.0, duration, num=samples.size, endpoint=False)
    target_x = np.linspace(0.0, duration, num=target_size, endpoint=False)
    return np.interp(target_x, source_x, samples).astype(np.float32)


def transcribe_samples(
    model,
    samples: np.ndarray,
    sample_rate_hz: int = WHISPER_SAMPLE_RATE,
    language: str | None = None,
) -> Tuple[str, float]:
    """Return ``(text, confidence)`` for a mono float32 buffer."""
    audio = resample(samples, sample_rate_hz)
    segments, _info = model.transcribe(audio, language=language)
    texts = []
    logprobs = []
    for seg in segments:
        text = seg.text.strip()
        if text:
            texts.append(text)
            logprobs.append(seg.avg_logprob)
    if not texts:
        return "", 0.0
    confidence = math.exp(sum(logprobs) / len(logprobs))
    return " ".join(texts), min(max(confidence, 0.0), 1.0)


def transcribe_audio(
    audio_path: str,
    model_name: str = "small",
    language: str | None = None,
    device: str | None = None,
    compute_type: str | None = None,
) -> str:
    model = load_whisper_model(model_name, device=device, compute_type=compute_type)
    segments, _info = model.transcribe(audio_path, language=language)
    return " ".join(seg.text.strip() for seg in segments if seg.text.strip())
