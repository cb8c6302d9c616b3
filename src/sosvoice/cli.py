"""CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import asdict
from datetime import datetime
from typing import Optional

import httpx
import yaml

from .api_client import build_http_client
from .config import Config, load_config, save_config
from .errors import AssistantError
from .location import GeocodingClient, LocationResolver
from .logging_utils import setup_logging
from .models import Message, Notification, Phase, Role
from .recorder import list_input_devices
from .session import (
    EmergencySession,
    build_position_provider,
    create_session,
    load_engine_factory,
    load_speech_engine,
)
from .session_io import build_record, save_transcript
from .storage import build_session_basename, ensure_dir
from .transcriber import transcribe_audio

logger = logging.getLogger("sosvoice.cli")

HELP_TEXT = """Type a message and press Enter to talk to the assistant.
  /talk            speak one turn through the microphone
  /stop            finish the spoken turn now
  /yes | /no       accept or decline the detected emergency
  /locate          detect the current location again
  /address TEXT    set the emergency address manually
  /help            show this help
  /quit            close the assistant"""


class ConsoleView:
    """Prints session events to the terminal."""

    def __init__(self) -> None:
        self.session: Optional[EmergencySession] = None
        self.case_id: Optional[str] = None

    def message(self, message: Message) -> None:
        who = "You" if message.role == Role.USER else "Assistant"
        print(f"{who}: {message.content}")

    def notification(self, notification: Notification) -> None:
        print(f"[{notification.title}] {notification.description}")

    def phase(self, phase: Phase) -> None:
        if phase == Phase.CONFIRMATION and self.session is not None:
            category = self.session.conversation.detected_category
            if category is not None:
                print(f"Detected: {category.name}. Type /yes to broadcast or /no to add details.")
        elif phase == Phase.BROADCASTING:
            print("Contacting nearby technicians...")

    def transcript(self, text: str) -> None:
        if text:
            print(f"  ... {text}")

    def success(self, case_id: str) -> None:
        self.case_id = case_id
        print(f"Emergency created: {case_id}")


async def _console_loop(session: EmergencySession) -> None:
    print(HELP_TEXT)
    while not session.closed:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        if session.closed:
            break
        command, _, rest = line.strip().partition(" ")
        if command in ("/quit", "/exit"):
            break
        if command == "/help":
            print(HELP_TEXT)
        elif command == "/talk":
            if session.start_listening():
                print("Listening... (/stop to finish)")
        elif command == "/stop":
            session.stop_listening()
        elif command in ("/yes", "/no"):
            if session.phase != Phase.CONFIRMATION:
                print("Nothing to confirm yet.")
            elif command == "/yes":
                await session.accept()
            else:
                session.decline()
        elif command == "/locate":
            location = await session.locate()
            if location is not None:
                print(f"Location: {location.display_text()}")
        elif command == "/address":
            location = await session.set_address(rest)
            print(f"Address: {session.resolver.best_address() or '(none)'}")
            if location is None:
                print("Coordinates unknown; use /locate or a geocodable address.")
        elif line.strip():
            if session.is_processing:
                print("Still processing the previous message...")
            else:
                await session.submit_text(line)


async def _assist(cfg: Config, args: argparse.Namespace) -> int:
    engine_factory = None if args.text_only else load_engine_factory(cfg)
    speech_engine = None if args.mute else load_speech_engine(cfg)
    view = ConsoleView()
    started_at = datetime.now()

    async with build_http_client(cfg.backend) as backend_http, httpx.AsyncClient(
        timeout=cfg.location.timeout_s
    ) as public_http:
        session = create_session(
            cfg,
            backend_http,
            public_http,
            speech_engine=speech_engine,
            engine_factory=engine_factory,
            notify=view.notification,
            on_success=view.success,
            on_message=view.message,
            on_phase_changed=view.phase,
            on_transcript=view.transcript,
        )
        view.session = session
        print(cfg.session.greeting)
        try:
            await session.open(locate=not args.no_locate)
            await _console_loop(session)
        finally:
            session.close()
            close_engine = getattr(speech_engine, "close", None)
            if close_engine is not None:
                close_engine()
            if args.save_dir:
                ensure_dir(args.save_dir)
                basename = build_session_basename("Emergency", started_at)
                path = os.path.join(args.save_dir, f"{basename}.transcript.json")
                save_transcript(path, build_record(basename, session, started_at))
                print(f"Transcript saved: {path}")
    return 0


async def _locate(cfg: Config, address: Optional[str]) -> int:
    async with build_http_client(cfg.backend) as backend_http, httpx.AsyncClient(
        timeout=cfg.location.timeout_s
    ) as public_http:
        resolver = LocationResolver.from_config(
            cfg.location,
            build_position_provider(cfg, public_http),
            GeocodingClient(backend_http, cfg.backend.geocode_path),
        )
        if address:
            location = await resolver.resolve_typed_address(address)
        else:
            location = await resolver.locate_device()
    if location is None:
        print(f"Address: {resolver.best_address()} (no coordinates)")
        return 1
    print(f"Coordinates: {location.coordinates_text()}")
    print(f"Address: {location.display_text()}")
    return 0


def main(argv: Optional[list] = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default="sosvoice_config.yml", help="Config file.")
    common.add_argument("--debug", action="store_true", help="Enable debug logging.")

    parser = argparse.ArgumentParser(prog="sosvoice")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices", parents=[common])
    devices_cmd.add_argument("--match", help="Filter device names by substring.")
    devices_cmd.add_argument(
        "--detail", action="store_true", help="Show detailed device channel info."
    )

    assist_cmd = sub.add_parser("assist", parents=[common])
    assist_cmd.add_argument(
        "--text-only", action="store_true", help="Disable speech recognition."
    )
    assist_cmd.add_argument("--mute", action="store_true", help="Disable narration.")
    assist_cmd.add_argument(
        "--no-locate", action="store_true", help="Skip automatic location on open."
    )
    assist_cmd.add_argument("--save-dir", help="Write the transcript JSON here.")

    locate_cmd = sub.add_parser("locate", parents=[common])
    locate_cmd.add_argument("--address", help="Forward-geocode this address instead.")

    transcribe_cmd = sub.add_parser("transcribe", parents=[common])
    transcribe_cmd.add_argument("audio_path", help="Path to audio file.")
    transcribe_cmd.add_argument("--model", help="Whisper model.")
    transcribe_cmd.add_argument("--language", help="Language code.")

    config_cmd = sub.add_parser("config", parents=[common])
    config_cmd.add_argument(
        "--write", action="store_true", help="Write the effective config to --config."
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    cfg = load_config(args.config)
    setup_logging(cfg.log_dir, level=logging.DEBUG if args.debug else logging.INFO)

    try:
        if args.command == "devices":
            devices = list_input_devices()
            if args.match:
                devices = [
                    d for d in devices if args.match.lower() in d.get("name", "").lower()
                ]
            for device in devices:
                line = (
                    f"[{device.get('index', '?')}] {device.get('name', 'Unknown')} "
                    f"(inputs: {device.get('max_input_channels', 0)})"
                )
                if args.detail and "default_samplerate" in device:
                    line = f"{line} [rate={device.get('default_samplerate')}, hostapi={device.get('hostapi')}]"
                print(line)
            return 0

        if args.command == "assist":
            return asyncio.run(_assist(cfg, args))

        if args.command == "locate":
            return asyncio.run(_locate(cfg, args.address))

        if args.command == "transcribe":
            text = transcribe_audio(
                args.audio_path,
                model_name=args.model or cfg.recognition.whisper_model,
                language=args.language or cfg.recognition.language,
                device=cfg.recognition.device,
                compute_type=cfg.recognition.compute_type,
            )
            print(text)
            return 0

        if args.command == "config":
            if args.write:
                save_config(args.config, cfg)
                print(f"Wrote {args.config}")
            else:
                print(yaml.safe_dump(asdict(cfg), sort_keys=False, allow_unicode=True))
            return 0
    except AssistantError as exc:
        logger.error("%s", exc)
        print(f"{exc.title}: {exc}")
        return 1
    except KeyboardInterrupt:
        return 130

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
