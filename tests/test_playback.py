import asyncio
import threading
import time
from types import SimpleNamespace

from fakes import FakeSpeechEngine, wait_until
from sosvoice.playback import (
    Pyttsx3SpeechEngine,
    SpeechPlaybackController,
    score_voice,
    select_voice,
)


def test_utterances_play_one_at_a_time():
    engine = FakeSpeechEngine()
    changes = []

    async def scenario():
        playback = SpeechPlaybackController(
            engine, lang="pt-PT", poll_interval_s=0.01, on_speaking_changed=changes.append
        )
        playback.speak("first")
        playback.speak("second")
        assert [text for text, _ in engine.spoken] == ["first"]
        engine.finish()
        await wait_until(lambda: len(engine.spoken) == 2)
        engine.finish()
        idle = await playback.wait_until_idle(timeout=1.0)
        return playback, idle

    playback, idle = asyncio.run(scenario())
    assert idle
    assert not playback.speaking
    assert engine.spoken == [("first", "pt-PT"), ("second", "pt-PT")]
    assert changes == [True, False]


def test_stop_drops_pending_utterances():
    engine = FakeSpeechEngine()

    async def scenario():
        playback = SpeechPlaybackController(engine, poll_interval_s=0.01)
        playback.speak("first")
        playback.speak("second")
        playback.stop()
        await asyncio.sleep(0.05)
        playback.close()
        return playback

    playback = asyncio.run(scenario())
    assert [text for text, _ in engine.spoken] == ["first"]
    assert engine.stops >= 1
    assert not playback.speaking


def test_wait_until_idle_times_out_while_speaking():
    engine = FakeSpeechEngine()

    async def scenario():
        playback = SpeechPlaybackController(engine, poll_interval_s=0.01)
        playback.speak("still talking")
        idle = await playback.wait_until_idle(timeout=0.05)
        playback.close()
        return idle

    assert asyncio.run(scenario()) is False


def test_without_engine_narration_is_skipped():
    async def scenario():
        playback = SpeechPlaybackController(None)
        playback.speak("hello")
        return playback, await playback.wait_until_idle(timeout=0.1)

    playback, idle = asyncio.run(scenario())
    assert not playback.available
    assert idle
    assert not playback.speaking


def test_select_voice_prefers_language_then_quality():
    voices = [
        SimpleNamespace(id="en", name="English David", languages=["en-US"], gender="male"),
        SimpleNamespace(id="br", name="Joana", languages=["pt_BR"], gender=None),
        SimpleNamespace(id="pt", name="Microsoft Helena", languages=["pt-PT"], gender=None),
    ]
    assert select_voice(voices, "pt-PT").id == "pt"
    assert score_voice(voices[1], "pt-PT") > score_voice(voices[0], "pt-PT")
    assert select_voice([], "pt-PT") is None


class FakeDriver:
    def __init__(self):
        self.callbacks = {}
        self.said = []
        self.started = threading.Event()
        self.release = threading.Event()
        self.stop_threads = []
        self.stopped = False

    def connect(self, topic, callback):
        self.callbacks[topic] = callback

    def setProperty(self, name, value):
        pass

    def getProperty(self, name):
        return []

    def say(self, text):
        self.said.append(text)
        self.stopped = False
        self.started.set()

    def runAndWait(self):
        self.release.wait(timeout=2.0)
        for word in self.said[-1].split():
            self.callbacks["started-word"]("utterance", 0, len(word))
            if self.stopped:
                return

    def stop(self):
        self.stop_threads.append(threading.current_thread().name)
        self.stopped = True


def test_pyttsx3_stop_is_applied_on_worker_thread():
    driver = FakeDriver()
    engine = Pyttsx3SpeechEngine(driver_factory=lambda: driver)
    engine.speak("one two three", "pt-PT")
    engine.speak("queued sentence", "pt-PT")
    assert driver.started.wait(timeout=2.0)

    engine.stop()
    driver.release.set()
    deadline = time.monotonic() + 2.0
    while driver.stop_threads == [] and time.monotonic() < deadline:
        time.sleep(0.01)
    engine.close()
    engine._thread.join(timeout=2.0)

    assert driver.stop_threads == ["sosvoice-tts"]
    assert driver.said == ["one two three"]
    assert not engine.is_speaking()
