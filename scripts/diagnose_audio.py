import argparse
import asyncio
import os
import sys
import time

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sosvoice.audio_utils import rms
from sosvoice.config import load_config
from sosvoice.errors import AssistantError
from sosvoice.level_monitor import AudioLevelMonitor
from sosvoice.recorder import MicrophoneStream, find_input_device


def _describe_device(info: dict) -> None:
    print(f"Input device: {info.get('name', '')}")
    print(f"Index: {info.get('index', '')}")
    print(f"Host API: {info.get('hostapi', '')}")
    print(f"Max input channels: {info.get('max_input_channels', 0)}")
    print(f"Default sample rate: {info.get('default_samplerate', '')}")


async def _run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    audio = cfg.audio
    if args.device:
        audio.device_name = args.device
    if args.raw:
        audio.noise_suppression = False
        audio.auto_gain_control = False

    _describe_device(find_input_device(audio.device_name))

    peaks = {"rms": 0.0}

    def _factory() -> MicrophoneStream:
        return MicrophoneStream.from_config(audio)

    monitor = AudioLevelMonitor(
        _factory,
        frame_interval_s=audio.frame_interval_s,
        silence_level=audio.silence_level,
    )
    stream = monitor.open()
    stream.subscribe(lambda block: peaks.__setitem__("rms", rms(block)))
    print("Streaming... press Ctrl+C to stop early.")

    end = time.monotonic() + args.seconds
    try:
        while time.monotonic() < end:
            await asyncio.sleep(0.5)
            bar = "#" * int(min(monitor.level, 2.0) * 20)
            print(
                f"Level {monitor.level:.2f} {bar:<40} | RMS {peaks['rms']:.3f} "
                f"| silent {monitor.silence_seconds:.1f}s"
            )
    finally:
        monitor.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="sosvoice_config.yml", help="Config file.")
    parser.add_argument("--device", help="Device name substring.")
    parser.add_argument("--seconds", type=float, default=6.0, help="Test duration.")
    parser.add_argument(
        "--raw", action="store_true", help="Disable noise gate and auto gain."
    )
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except AssistantError as exc:
        print(f"{exc.title}: {exc}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
