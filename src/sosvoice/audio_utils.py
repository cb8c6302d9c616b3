"""Audio helpers."""

from __future__ import annotations

import numpy as np

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


def to_float32(data: np.ndarray) -> np.ndarray:
    """Convert int16 or float blocks to mono float32 in [-1, 1]."""
    if data is None or data.size == 0:
        return np.zeros((0,), dtype=np.float32)
    if data.dtype == np.int16:
        samples = data.astype(np.float32) / 32768.0
    else:
        samples = data.astype(np.float32, copy=False)
    if samples.ndim == 2:
        samples = samples.mean(axis=1)
    return samples


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples * samples)))


def spectrum_level(samples: np.ndarray) -> float:
    """Average byte-scaled spectrum divided by 128, roughly 0..2.

    Magnitudes are windowed, converted to dB and mapped from
    [MIN_DECIBELS, MAX_DECIBELS] onto 0..255 before averaging.
    """
    if samples.size == 0:
        return 0.0
    window = np.hanning(samples.size).astype(np.float32)
    spec = np.fft.rfft(samples * window)
    magnitude = np.abs(spec) / samples.size
    decibels = 20.0 * np.log10(magnitude + 1e-12)
    scaled = (decibels - MIN_DECIBELS) * (255.0 / (MAX_DECIBELS - MIN_DECIBELS))
    byte_values = np.clip(scaled, 0.0, 255.0)
    return float(np.mean(byte_values) / 128.0)


def apply_noise_gate(samples: np.ndarray, floor: float = 0.01) -> np.ndarray:
    if samples.size == 0:
        return samples
    if rms(samples) < floor:
        return np.zeros_like(samples)
    return samples


def apply_auto_gain(samples: np.ndarray, target_peak: float = 0.9, max_gain: float = 8.0) -> np.ndarray:
    if samples.size == 0:
        return samples
    peak = float(np.max(np.abs(samples)))
    if peak <= 0.0:
        return samples
    gain = min(target_peak / peak, max_gain)
    if gain <= 1.0:
        return samples
    return (samples * gain).astype(np.float32)
