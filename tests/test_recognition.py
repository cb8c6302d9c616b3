import asyncio

import numpy as np
import pytest

from fakes import FakeMicrophone, FakeRecognitionEngine, noise_block, wait_until
from sosvoice.errors import CapabilityUnavailable, RecognitionError
from sosvoice.models import RecognitionResult
from sosvoice.recognition import (
    RecognitionHandlers,
    RecognitionState,
    SpeechRecognitionController,
    WhisperRecognitionEngine,
)


class Recorder:
    def __init__(self):
        self.interim = []
        self.final = []
        self.errors = []
        self.idle = 0

    def controller(self, factory):
        def _idle():
            self.idle += 1

        return SpeechRecognitionController(
            factory,
            on_interim=self.interim.append,
            on_final=self.final.append,
            on_error=self.errors.append,
            on_idle=_idle,
        )


def make_factory():
    engines = []

    def factory():
        engines.append(FakeRecognitionEngine())
        return engines[-1]

    return factory, engines


def test_start_stop_start_leaves_one_active_engine():
    events = Recorder()
    factory, engines = make_factory()
    ctrl = events.controller(factory)

    ctrl.start(FakeMicrophone())
    ctrl.stop()
    ctrl.start(FakeMicrophone())

    assert len(engines) == 2
    assert engines[0].aborted == 1
    assert engines[0].handlers is None
    assert engines[1].handlers is not None
    assert ctrl.engine is engines[1]
    assert ctrl.state == RecognitionState.LISTENING
    assert events.errors == []


def test_detached_engine_cannot_report_back():
    events = Recorder()
    factory, engines = make_factory()
    ctrl = events.controller(factory)

    ctrl.start(FakeMicrophone())
    stale = engines[0].handlers
    ctrl.force_stop()
    stale.on_result(RecognitionResult("late words", is_final=True))
    stale.on_error("network", "late failure")

    assert events.final == []
    assert events.errors == []
    assert not ctrl.is_listening


def test_final_result_stops_engine_and_goes_idle():
    events = Recorder()
    factory, engines = make_factory()
    ctrl = events.controller(factory)

    ctrl.start(FakeMicrophone())
    engines[0].emit("on_result", RecognitionResult("fire in", is_final=False))
    engines[0].emit("on_result", RecognitionResult("  fire in my kitchen ", is_final=True))
    engines[0].emit("on_end")

    assert events.interim == ["fire in"]
    assert events.final == ["fire in my kitchen"]
    assert engines[0].stopped == 1
    assert events.idle == 1
    assert not ctrl.is_listening


@pytest.mark.parametrize("code", ["no-speech", "aborted"])
def test_quiet_endings_are_not_reported(code):
    events = Recorder()
    factory, engines = make_factory()
    ctrl = events.controller(factory)

    ctrl.start(FakeMicrophone())
    engines[0].emit("on_error", code, "nothing")

    assert events.errors == []
    assert events.idle == 1
    assert not ctrl.is_listening


def test_engine_error_is_reported_once():
    events = Recorder()
    factory, engines = make_factory()
    ctrl = events.controller(factory)

    ctrl.start(FakeMicrophone())
    engines[0].emit("on_error", "network", "offline")
    engines[0].emit("on_end")

    assert len(events.errors) == 1
    assert isinstance(events.errors[0], RecognitionError)
    assert events.errors[0].code == "network"
    assert events.idle == 1


def test_missing_engine_is_capability_unavailable():
    ctrl = SpeechRecognitionController(None)
    assert not ctrl.supported
    with pytest.raises(CapabilityUnavailable):
        ctrl.start(FakeMicrophone())
    assert not ctrl.is_listening


def whisper_factory(text, calls, **overrides):
    def transcribe(model, audio, sample_rate_hz, language):
        calls.append(audio.size)
        return text, 0.9

    options = dict(
        silence_timeout_s=0.05,
        no_speech_timeout_s=0.1,
        interim_interval_s=0.0,
        check_interval_s=0.01,
        transcribe=transcribe,
    )
    options.update(overrides)
    return lambda: WhisperRecognitionEngine(object(), **options)


def test_whisper_engine_finalizes_after_silence():
    events = Recorder()
    calls = []
    ctrl = events.controller(whisper_factory("fire in my kitchen", calls))
    mic = FakeMicrophone()

    async def scenario():
        ctrl.start(mic)
        mic.push(noise_block())
        mic.push(np.zeros(1024, dtype=np.float32))
        await wait_until(lambda: events.idle == 1)

    asyncio.run(scenario())
    assert events.final == ["fire in my kitchen"]
    assert calls == [2048]
    assert mic.subscribers == []
    assert not ctrl.is_listening


def test_whisper_engine_stop_delivers_pending_final():
    events = Recorder()
    calls = []
    ctrl = events.controller(whisper_factory("help", calls, silence_timeout_s=10.0))
    mic = FakeMicrophone()

    async def scenario():
        ctrl.start(mic)
        mic.push(noise_block())
        ctrl.stop()
        assert ctrl.state == RecognitionState.ENDING
        await wait_until(lambda: events.idle == 1)

    asyncio.run(scenario())
    assert events.final == ["help"]


def test_whisper_engine_reports_no_speech_quietly():
    events = Recorder()
    calls = []
    ctrl = events.controller(whisper_factory("unused", calls))

    async def scenario():
        ctrl.start(FakeMicrophone())
        await wait_until(lambda: events.idle == 1)

    asyncio.run(scenario())
    assert events.final == []
    assert events.errors == []
    assert calls == []


def test_whisper_engine_abort_is_silent_after_detach():
    events = Recorder()
    calls = []
    ctrl = events.controller(whisper_factory("unused", calls, silence_timeout_s=10.0))
    mic = FakeMicrophone()

    async def scenario():
        ctrl.start(mic)
        engine = ctrl.engine
        mic.push(noise_block())
        ctrl.force_stop()
        await asyncio.sleep(0.05)
        return engine

    engine = asyncio.run(scenario())
    assert not engine.active
    assert events.final == []
    assert events.errors == []
    assert events.idle == 0
    assert mic.subscribers == []


def test_whisper_engine_abort_outside_loop_still_finishes():
    calls = []
    ended = []
    errors = []
    engine = whisper_factory("unused", calls, silence_timeout_s=10.0, no_speech_timeout_s=10.0)()
    mic = FakeMicrophone()

    async def scenario():
        engine.start(mic)

    asyncio.run(scenario())
    engine.handlers = RecognitionHandlers(
        on_error=lambda code, message: errors.append(code),
        on_end=lambda: ended.append(True),
    )
    engine.abort()

    assert errors == ["aborted"]
    assert ended == [True]
    assert not engine.active
    assert mic.subscribers == []
