"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Optional

import yaml


@dataclass
class AudioConfig:
    sample_rate_hz: int = 16000
    channels: int = 1
    blocksize: int = 1024
    device_name: Optional[str] = None
    frame_interval_s: float = 1 / 60
    silence_level: float = 0.15
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


@dataclass
class RecognitionConfig:
    whisper_model: str = "small"
    device: Optional[str] = None
    compute_type: Optional[str] = None
    language: Optional[str] = "pt"
    speech_threshold: float = 0.02
    silence_timeout_s: float = 2.0
    no_speech_timeout_s: float = 8.0
    max_turn_s: float = 30.0
    interim_interval_s: float = 1.5


@dataclass
class PlaybackConfig:
    lang: str = "pt-PT"
    rate: Optional[int] = None
    poll_interval_s: float = 0.1


@dataclass
class LocationConfig:
    timeout_s: float = 10.0
    max_attempts: int = 2
    high_accuracy: bool = True
    ip_lookup_url: str = "https://ipapi.co/json/"
    fixed_lat: Optional[float] = None
    fixed_lng: Optional[float] = None


@dataclass
class BackendConfig:
    base_url: str = "http://localhost:3000"
    classifier_path: str = "/api/ai/emergency-chat"
    geocode_path: str = "/api/geo"
    broadcast_path: str = "/api/emergency/create"
    api_token: Optional[str] = None
    requester_id: Optional[str] = None
    timeout_s: float = 30.0


@dataclass
class SessionConfig:
    confidence_threshold: float = 0.8
    close_delay_s: float = 3.0
    greeting: str = (
        "EMERGENCY SERVICE. I am your AI assistant. What is the problem? "
        "(For example: burst pipe, power outage...)"
    )
    decline_prompt: str = "Understood. Please describe the problem in more detail."
    location_prompt: str = "I need your location. Please check the GPS or type the address."
    coordinates_prompt: str = (
        "I still need your exact position. Use /locate, or type a street address "
        "without commas so it can be looked up."
    )
    confirmation_phrase: str = "Confirmed: {category}. Contacting nearby technicians..."
    classifier_apology: str = (
        "Sorry, an error occurred while processing your request. Please try again."
    )
    broadcast_apology: str = (
        "Sorry, the emergency could not be broadcast. Please try again."
    )


@dataclass
class Config:
    audio: AudioConfig = field(default_factory=AudioConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    log_dir: str = "logs"


def load_config(path: str) -> Config:
    if not os.path.exists(path):
        return Config()
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    return Config(
        audio=AudioConfig(**data.get("audio", {})),
        recognition=RecognitionConfig(**data.get("recognition", {})),
        playback=PlaybackConfig(**data.get("playback", {})),
        location=LocationConfig(**data.get("location", {})),
        backend=BackendConfig(**data.get("backend", {})),
        session=SessionConfig(**data.get("session", {})),
        log_dir=data.get("log_dir", "logs"),
    )


def save_config(path: str, config: Config) -> None:
    data = asdict(config)
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
