import asyncio
import logging
import os
import time
from typing import Callable, List, Optional

from livequiz.channel.models import Channel
from livequiz.quiz.schemas import (
    DEFAULT_TIME_LIMIT,
    EventBase,
    LiveQuestion,
    QuestionStartEvent,
    QuizEndedEvent,
    QuizStateEvent,
    QuizStatus,
    RevealAnswersEvent,
    ShowLeaderboardEvent,
    TimerSyncEvent,
)
from livequiz.quiz.state import QuizObserver

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0
RESYNC_INTERVAL = float(os.getenv("QUIZ_RESYNC_INTERVAL", "5"))
REVEAL_DELAY = 0.1


class QuizAuthority(QuizObserver):
    """
    The host side of a live quiz: the only place state transitions originate.

    Every command mutates the local state first and then broadcasts exactly one
    event. A command whose precondition does not hold returns False and
    changes nothing. The authority never applies broadcasts it receives.
    """

    def __init__(
        self,
        channel: Channel,
        questions: List[LiveQuestion],
        default_time_limit: int = DEFAULT_TIME_LIMIT,
        tick_interval: float = TICK_INTERVAL,
        resync_interval: float = RESYNC_INTERVAL,
        reveal_delay: float = REVEAL_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(questions=questions, default_time_limit=default_time_limit)
        self.channel = channel
        self.tick_interval = tick_interval
        self.resync_interval = resync_interval
        self.reveal_delay = reveal_delay
        self.clock = clock
        self._last_seq = -1
        self._pending_reveal: Optional[asyncio.TimerHandle] = None
        self._timer_reset = asyncio.Event()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _next_seq(self) -> int:
        # wall-clock based so a restarted host still outranks its previous stamps
        self._last_seq = max(self._last_seq + 1, self._now_ms())
        return self._last_seq

    def _broadcast(self, event: EventBase) -> None:
        self.channel.send(event.event, event.client_model_dump_json())

    def _update(self, **changes) -> None:
        self._set_state(self._state.model_copy(update=changes))

    def _reset_timer(self) -> None:
        # the tick loop restarts its interval from now, or goes idle
        self._timer_reset.set()

    def start_question(self, index: int, time_limit: Optional[int] = None) -> bool:
        if self.is_ended:
            logger.debug(f"start_question({index}) ignored, quiz has ended")
            return False
        if not 0 <= index < self.total_questions:
            logger.debug(
                f"start_question({index}) ignored, out of bounds for {self.total_questions} questions"
            )
            return False

        self.cancel_pending_reveal()
        limit = time_limit or self.questions[index].time_limit or self.default_time_limit
        started_at = self._now_ms()
        self._question_start = (index, started_at, limit)

        self._update(
            current_question_index=index,
            question_started_at=started_at,
            time_remaining=limit,
            is_revealing=False,
            is_paused=False,
            show_leaderboard=False,
            status=QuizStatus.ACTIVE,
        )
        self._reset_timer()
        self._broadcast(
            QuestionStartEvent(
                seq=self._next_seq(),
                question_index=index,
                started_at=started_at,
                time_limit=limit,
            )
        )
        logger.info(f"Question {index + 1} started with {limit}s on {self.channel.key}")
        return True

    def start_quiz(self) -> bool:
        if self.status != QuizStatus.WAITING:
            return False
        return self.start_question(0)

    def pause_timer(self) -> bool:
        if not self.is_active or self._state.is_paused:
            return False
        self._update(is_paused=True)
        self._reset_timer()
        self._send_timer_sync()
        return True

    def resume_timer(self) -> bool:
        if not self.is_active or not self._state.is_paused:
            return False
        self._update(is_paused=False)
        self._reset_timer()
        self._send_timer_sync()
        return True

    def reveal_answers(self) -> bool:
        # an expired timer leaves the status active, so this covers both cases
        if not self.is_active:
            return False

        self.cancel_pending_reveal()
        self._update(
            is_revealing=True,
            status=QuizStatus.REVEALING,
            time_remaining=0,
        )
        self._reset_timer()
        self._broadcast(
            RevealAnswersEvent(
                seq=self._next_seq(),
                question_index=self._state.current_question_index,
            )
        )
        return True

    def show_leaderboard(self) -> bool:
        if self.is_ended:
            return False
        self.cancel_pending_reveal()
        self._update(show_leaderboard=True, status=QuizStatus.LEADERBOARD)
        self._broadcast(ShowLeaderboardEvent(seq=self._next_seq()))
        return True

    def next_question(self) -> bool:
        next_index = self._state.current_question_index + 1
        if next_index >= self.total_questions:
            return False
        return self.start_question(next_index)

    def previous_question(self) -> bool:
        previous_index = self._state.current_question_index - 1
        if previous_index < 0:
            return False
        return self.start_question(previous_index)

    def end_quiz(self) -> bool:
        if self.is_ended:
            return False
        self.cancel_pending_reveal()
        self._update(status=QuizStatus.ENDED)
        self._reset_timer()
        self._broadcast(QuizEndedEvent(seq=self._next_seq()))
        logger.info(f"Quiz ended on {self.channel.key}")
        return True

    def _send_timer_sync(self) -> None:
        self._broadcast(
            TimerSyncEvent(
                seq=self._next_seq(),
                time_remaining=self._state.time_remaining,
                is_paused=self._state.is_paused,
            )
        )

    def tick(self) -> bool:
        """
        One second of countdown. Does nothing unless a question is active and
        unpaused. Reaching zero schedules the automatic reveal.
        """
        if not self.is_active or self._state.is_paused:
            return False

        time_remaining = max(0, self._state.time_remaining - 1)
        self._update(time_remaining=time_remaining)
        self._send_timer_sync()

        if time_remaining == 0 and not self._state.is_revealing:
            self._schedule_reveal()
        return True

    def _schedule_reveal(self) -> None:
        if self._pending_reveal is not None:
            return
        index = self._state.current_question_index
        started_at = self._state.question_started_at
        loop = asyncio.get_running_loop()
        self._pending_reveal = loop.call_later(
            self.reveal_delay, self._auto_reveal, index, started_at
        )

    def _auto_reveal(self, index: int, started_at: Optional[int]) -> None:
        self._pending_reveal = None
        state = self._state
        if (
            state.current_question_index != index
            or state.question_started_at != started_at
        ):
            return
        if self.reveal_answers():
            logger.info(f"Question {index + 1} timed out on {self.channel.key}")

    def cancel_pending_reveal(self) -> None:
        if self._pending_reveal is not None:
            self._pending_reveal.cancel()
            self._pending_reveal = None

    def send_snapshot(self) -> None:
        self._broadcast(QuizStateEvent.from_state(self._state, seq=self._next_seq()))

    async def run_timer(self) -> None:
        """
        Ticks once per interval while a question is active and unpaused.
        Starting a question or resuming restarts the interval, so the first
        decrement always comes one full interval later.
        """
        try:
            while True:
                self._timer_reset.clear()
                if not self.is_active or self._state.is_paused:
                    await self._timer_reset.wait()
                    continue
                try:
                    await asyncio.wait_for(
                        self._timer_reset.wait(), timeout=self.tick_interval
                    )
                except asyncio.TimeoutError:
                    self.tick()
        except asyncio.CancelledError:
            self.cancel_pending_reveal()
            raise

    async def run_resync(self) -> None:
        """Periodically broadcasts the whole state for late joiners."""
        while True:
            await asyncio.sleep(self.resync_interval)
            self.send_snapshot()
