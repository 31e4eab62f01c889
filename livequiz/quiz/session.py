import asyncio
import logging
from typing import List, Optional

from livequiz.channel.models import Channel, ChannelHub
from livequiz.quiz.authority import QuizAuthority
from livequiz.quiz.schemas import DEFAULT_TIME_LIMIT, LiveQuestion, channel_key
from livequiz.quiz.state import QuizFollower, QuizObserver

logger = logging.getLogger(__name__)


class LiveQuizSession:
    """
    Owns everything one client holds for a session: the channel subscription
    and, for the host, the tick and resync tasks. They are released together
    by `close`, so nothing fires after teardown.
    """

    def __init__(
        self,
        hub: ChannelHub,
        session_id: str,
        questions: Optional[List[LiveQuestion]] = None,
        is_host: bool = False,
        default_time_limit: int = DEFAULT_TIME_LIMIT,
        **authority_options,
    ):
        self.hub = hub
        self.session_id = session_id
        self.questions = list(questions or [])
        self.is_host = is_host
        self.default_time_limit = default_time_limit
        self.authority_options = authority_options
        self.channel: Optional[Channel] = None
        self.authority: Optional[QuizAuthority] = None
        self.follower: Optional[QuizFollower] = None
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def host(
        cls,
        hub: ChannelHub,
        session_id: str,
        questions: List[LiveQuestion],
        **authority_options,
    ) -> "LiveQuizSession":
        return cls(hub, session_id, questions, is_host=True, **authority_options)

    @classmethod
    def participant(
        cls,
        hub: ChannelHub,
        session_id: str,
        questions: Optional[List[LiveQuestion]] = None,
        default_time_limit: int = DEFAULT_TIME_LIMIT,
    ) -> "LiveQuizSession":
        return cls(
            hub, session_id, questions, is_host=False, default_time_limit=default_time_limit
        )

    @property
    def observer(self) -> QuizObserver:
        if self.authority is not None:
            return self.authority
        if self.follower is not None:
            return self.follower
        raise RuntimeError(f"Live quiz session {self.session_id} is not started")

    @property
    def is_running(self) -> bool:
        return self.channel is not None

    async def start(self) -> "LiveQuizSession":
        if self.is_running:
            return self

        self.channel = self.hub.join(channel_key(self.session_id))

        if self.is_host:
            self.authority = QuizAuthority(
                self.channel,
                self.questions,
                default_time_limit=self.default_time_limit,
                **self.authority_options,
            )
            self._tasks = [
                asyncio.create_task(
                    self.authority.run_timer(),
                    name=f"Quiz Timer Task for {self.session_id}",
                ),
                asyncio.create_task(
                    self.authority.run_resync(),
                    name=f"Quiz Resync Task for {self.session_id}",
                ),
            ]
        else:
            self.follower = QuizFollower(
                self.questions, default_time_limit=self.default_time_limit
            )
            self.follower.attach(self.channel)

        logger.info(
            f"Live quiz session {self.session_id} started as {'host' if self.is_host else 'participant'}"
        )
        return self

    async def close(self) -> None:
        if not self.is_running:
            return

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Task {task.get_name()} exited with exception {e}")
        self._tasks = []

        if self.authority is not None:
            self.authority.cancel_pending_reveal()

        self.channel.leave()
        self.channel = None
        logger.info(f"Live quiz session {self.session_id} closed")

    async def __aenter__(self) -> "LiveQuizSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
