from typing import List

import pytest
import pytest_asyncio

from livequiz.channel.models import LocalChannelHub
from livequiz.quiz.schemas import LiveOption, LiveQuestion


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel:
    """Stands in for a joined channel and keeps everything sent on it."""

    def __init__(self, key: str = "live-quiz:test-session"):
        self.key = key
        self.sent: List[tuple] = []
        self.joined = True

    def send(self, event_name: str, payload: dict) -> None:
        self.sent.append((event_name, payload))

    def on(self, event_name, handler):
        return self

    def leave(self) -> None:
        self.joined = False

    def events(self, event_name: str) -> List[dict]:
        return [payload for name, payload in self.sent if name == event_name]

    @property
    def last(self) -> tuple:
        return self.sent[-1]


def make_questions(count: int = 5, time_limit=None) -> List[LiveQuestion]:
    return [
        LiveQuestion(
            question_id=f"q{i}",
            text=f"Question {i + 1}?",
            time_limit=time_limit,
            options=[
                LiveOption(option_id=f"q{i}-right", text="Right", is_correct=True),
                LiveOption(option_id=f"q{i}-wrong", text="Wrong"),
            ],
        )
        for i in range(count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def questions():
    return make_questions()


@pytest_asyncio.fixture
async def hub():
    hub = LocalChannelHub()
    await hub.start()
    yield hub
    await hub.close()
