import asyncio

import pytest

from fakes import FIRE, FakeBroadcaster, FakeClassifier, reply
from sosvoice.config import SessionConfig
from sosvoice.conversation import ConversationSessionMachine
from sosvoice.errors import BroadcastFailure, ClassifierFailure, SessionStateError
from sosvoice.location import LocationResolver
from sosvoice.models import Location, Phase, Role


def located_resolver(address="Rua Augusta 12, Lisboa"):
    resolver = LocationResolver(None)
    resolver.location = Location(38.7, -9.14, address)
    resolver.address_text = address
    return resolver


class Harness:
    def __init__(self, *replies, broadcast="case-123", resolver=None):
        self.classifier = FakeClassifier(*replies)
        self.broadcaster = FakeBroadcaster(broadcast)
        self.resolver = resolver if resolver is not None else located_resolver()
        self.narrated = []
        self.notifications = []
        self.phases = []
        self.machine = ConversationSessionMachine(
            self.classifier,
            self.broadcaster,
            self.resolver,
            narrate=self.narrated.append,
            notify=self.notifications.append,
            config=SessionConfig(),
            requester_id="user-42",
            on_phase_changed=self.phases.append,
        )


def test_fire_report_is_confirmed_and_broadcast():
    h = Harness(reply("Understood, a fire. Is anyone hurt?", FIRE))

    async def scenario():
        await h.machine.submit_user_turn("fire in my kitchen")
        assert h.machine.phase == Phase.CONFIRMATION
        assert h.machine.detected_category.name == "Fire"
        return await h.machine.accept()

    case_id = asyncio.run(scenario())
    assert case_id == "case-123"
    assert h.phases == [Phase.CONFIRMATION, Phase.BROADCASTING]
    assert len(h.broadcaster.cases) == 1
    case = h.broadcaster.cases[0]
    assert case.category == "Fire"
    assert case.description == "fire in my kitchen\nUnderstood, a fire. Is anyone hurt?"
    assert case.location.address == "Rua Augusta 12, Lisboa"
    assert case.requester_id == "user-42"
    assert len(h.machine.messages) == 2
    assert h.narrated[-1] == "Confirmed: Fire. Contacting nearby technicians..."
    assert h.classifier.calls[0] == ([("user", "fire in my kitchen")], "Rua Augusta 12, Lisboa")


@pytest.mark.parametrize("confidence", [0.5, 0.8])
def test_low_confidence_stays_in_chat(confidence):
    h = Harness(reply("Can you tell me more?", ("fire-1", "Fire", confidence)))

    asyncio.run(h.machine.submit_user_turn("something smells like smoke"))

    assert h.machine.phase == Phase.CHAT
    assert h.machine.detected_category is None
    assert h.phases == []
    assert [m.role for m in h.machine.messages] == [Role.USER, Role.ASSISTANT]
    assert h.narrated == ["Can you tell me more?"]


def test_failed_broadcast_returns_to_chat_with_one_apology():
    h = Harness(reply("A fire.", FIRE), broadcast=BroadcastFailure("backend down"))

    async def scenario():
        await h.machine.submit_user_turn("fire in my kitchen")
        before = h.machine.messages
        case_id = await h.machine.accept()
        return before, case_id

    before, case_id = asyncio.run(scenario())
    after = h.machine.messages
    assert case_id is None
    assert h.machine.case_id is None
    assert h.machine.phase == Phase.CHAT
    assert h.machine.detected_category is None
    assert not h.machine.is_processing
    assert len(after) == len(before) + 1
    assert after[:-1] == before
    assert after[-1].content == SessionConfig().broadcast_apology
    assert len(h.notifications) == 1


def test_decline_returns_to_chat_and_asks_for_details():
    h = Harness(reply("A fire.", FIRE))

    async def scenario():
        await h.machine.submit_user_turn("fire")
        h.machine.decline()

    asyncio.run(scenario())
    assert h.machine.phase == Phase.CHAT
    assert h.machine.detected_category is None
    assert h.machine.messages[-1].content == SessionConfig().decline_prompt
    assert h.broadcaster.cases == []


def test_decline_and_accept_need_confirmation_phase():
    h = Harness()
    with pytest.raises(SessionStateError):
        h.machine.decline()
    with pytest.raises(SessionStateError):
        asyncio.run(h.machine.accept())


def test_classifier_failure_apologises():
    h = Harness(ClassifierFailure("timeout"))

    accepted = asyncio.run(h.machine.submit_user_turn("help"))

    assert accepted
    assert not h.machine.is_processing
    assert h.machine.phase == Phase.CHAT
    assert h.machine.messages[-1].content == SessionConfig().classifier_apology
    assert h.narrated == [SessionConfig().classifier_apology]


def test_empty_turn_is_ignored():
    h = Harness()
    assert asyncio.run(h.machine.submit_user_turn("   ")) is False
    assert h.machine.messages == []
    assert h.classifier.calls == []


def test_turn_dropped_while_request_in_flight():
    class SlowClassifier(FakeClassifier):
        async def classify(self, messages, location):
            await self.release.wait()
            return await super().classify(messages, location)

    async def scenario():
        h = Harness()
        slow = SlowClassifier(reply("ok"))
        slow.release = asyncio.Event()
        h.machine._classifier = slow
        first = asyncio.ensure_future(h.machine.submit_user_turn("first"))
        await asyncio.sleep(0)
        assert h.machine.is_processing
        second = await h.machine.submit_user_turn("second")
        slow.release.set()
        await first
        return h, second

    h, second = asyncio.run(scenario())
    assert second is False
    assert [m.content for m in h.machine.messages] == ["first", "ok"]


def test_turns_ignored_during_confirmation():
    h = Harness(reply("A fire.", FIRE))

    async def scenario():
        await h.machine.submit_user_turn("fire")
        return await h.machine.submit_user_turn("also smoke")

    assert asyncio.run(scenario()) is False
    assert len(h.machine.messages) == 2


def test_confirmation_waits_for_an_address():
    h = Harness(reply("A fire.", FIRE), resolver=LocationResolver(None))

    asyncio.run(h.machine.submit_user_turn("fire"))
    assert h.machine.phase == Phase.CHAT
    assert h.machine.pending_category.name == "Fire"
    assert h.machine.messages[-1].content == SessionConfig().location_prompt

    h.resolver.address_text = "Rua Augusta 12"
    h.machine.location_updated()
    assert h.machine.phase == Phase.CONFIRMATION
    assert h.machine.pending_category is None


def test_accept_without_coordinates_returns_to_chat():
    resolver = LocationResolver(None)
    resolver.address_text = "Rua Augusta 12, Lisboa"
    h = Harness(reply("A fire.", FIRE), resolver=resolver)

    async def scenario():
        await h.machine.submit_user_turn("fire")
        return await h.machine.accept()

    assert asyncio.run(scenario()) is None
    assert h.machine.phase == Phase.CHAT
    assert h.machine.pending_category.name == "Fire"
    assert h.broadcaster.cases == []
    assert h.machine.messages[-1].content == SessionConfig().coordinates_prompt

    h.machine.location_updated()
    assert h.machine.phase == Phase.CHAT

    resolver.location = Location(38.7, -9.14)
    h.machine.location_updated()
    assert h.machine.phase == Phase.CONFIRMATION
    assert h.machine.detected_category.name == "Fire"


def test_unexpected_broadcast_error_returns_to_chat():
    h = Harness(
        reply("A fire.", FIRE),
        reply("Tell me more."),
        broadcast=RuntimeError("connection pool exploded"),
    )

    async def scenario():
        await h.machine.submit_user_turn("fire in my kitchen")
        case_id = await h.machine.accept()
        accepted = await h.machine.submit_user_turn("it is spreading")
        return case_id, accepted

    case_id, accepted = asyncio.run(scenario())
    assert case_id is None
    assert accepted is True
    assert h.machine.phase == Phase.CHAT
    assert not h.machine.is_processing
    assert SessionConfig().broadcast_apology in [m.content for m in h.machine.messages]
    assert [n.title for n in h.notifications] == ["Broadcast failed"]


def test_unexpected_classifier_error_apologises():
    h = Harness(ValueError("bad payload"), reply("Where are you?"))

    async def scenario():
        first = await h.machine.submit_user_turn("help")
        second = await h.machine.submit_user_turn("help again")
        return first, second

    first, second = asyncio.run(scenario())
    assert (first, second) == (True, True)
    assert not h.machine.is_processing
    assert [m.content for m in h.machine.messages] == [
        "help",
        SessionConfig().classifier_apology,
        "help again",
        "Where are you?",
    ]
