import asyncio
import logging
import os
import time
from typing import List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from livequiz.api.errors import (
    ErrorBase,
    Errors,
    QuizEndedException,
    UserLeftException,
)
from livequiz.api.handlers import (
    get_payload,
    get_selected_option,
    handle_message,
)
from livequiz.api.schemas import WsConnectionType
from livequiz.channel.models import ChannelHub
from livequiz.db.models import DbManager
from livequiz.db.schemas import DbParticipant, DbResponse, DbSession, SessionStatus
from livequiz.quiz.schemas import QuizState, QuizStatus
from livequiz.quiz.scoring import grade_answer
from livequiz.quiz.session import LiveQuizSession

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = int(os.getenv("HEARTBEAT_INTERVAL", "3"))

# persisted session status to record after a command took effect
COMMAND_SESSION_STATUS = {
    "start-quiz": SessionStatus.ACTIVE,
    "start-question": SessionStatus.ACTIVE,
    "end-quiz": SessionStatus.ENDED,
}


class WebSocketManager:
    """Manages one client's WebSocket connection to a live quiz session."""

    def __init__(
        self,
        websocket: WebSocket,
        session_id: str,
        db_manager: DbManager,
        hub: ChannelHub,
    ):
        self.websocket = websocket
        self.session_id = session_id
        self.db_manager = db_manager
        self.hub = hub
        self.connection_type: Optional[WsConnectionType] = None
        self.user_id: Optional[str] = None
        self.db_session: Optional[DbSession] = None
        self.live_session: Optional[LiveQuizSession] = None
        self.participant: Optional[DbParticipant] = None
        self.answered_questions: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue()

    def validate_connection(self) -> None:
        """Validate the WebSocket connection headers against the stored session."""
        self.user_id = self.websocket.headers.get("user_id")
        if self.user_id is None:
            raise Errors.MISSING_USER_ID_HEADER

        try:
            self.connection_type = WsConnectionType(self.websocket.headers.get("role"))
        except ValueError:
            raise Errors.INVALID_ROLE

        self.db_session = self.db_manager.sessions.get_session(self.session_id)
        if self.db_session is None:
            raise Errors.SESSION_NOT_FOUND

        if self.db_session.status == SessionStatus.ENDED:
            raise Errors.SESSION_ENDED

        if (
            self.connection_type == WsConnectionType.HOST
            and self.db_session.host_id != self.user_id
        ):
            raise Errors.USER_FORBIDDEN

    async def start_live_session(self) -> LiveQuizSession:
        questions = [
            q.to_live_question()
            for q in self.db_manager.questions.get_session_questions(self.session_id)
        ]

        if self.connection_type == WsConnectionType.HOST:
            self.live_session = LiveQuizSession.host(self.hub, self.session_id, questions)
        else:
            self.join_as_participant()
            self.live_session = LiveQuizSession.participant(
                self.hub, self.session_id, questions
            )

        await self.live_session.start()
        self.live_session.observer.add_listener(self.on_state_change)
        logger.info(
            f"{self.connection_type} {self.user_id} joined live quiz {self.session_id} "
            f"with {len(questions)} questions"
        )
        return self.live_session

    def join_as_participant(self) -> DbParticipant:
        self.participant = self.db_manager.participants.join_session(
            self.session_id, self.user_id, self.websocket.headers.get("nickname")
        )
        if self.participant.is_blocked:
            raise Errors.USER_FORBIDDEN
        return self.participant

    def on_state_change(self, state: QuizState) -> None:
        self.outbox.put_nowait(state)

    async def listen_to_websocket(self) -> None:
        """
        Listen to WebSocket messages, carrying out the host's commands and
        taking participants' answers.
        """
        while True:
            try:
                message = await self.websocket.receive_json()
            except WebSocketDisconnect:
                raise UserLeftException

            try:
                if isinstance(message, dict) and message.get("type") == "submit-answer":
                    await self.submit_answer(message)
                    continue
                changed = handle_message(
                    message, self.connection_type, self.live_session.authority
                )
            except ErrorBase as e:
                logger.warning(f"Rejected message from {self.user_id}: {e.message}")
                await self.websocket.send_json(
                    {"type": "error", "error_code": e.error_code, "message": e.message}
                )
                continue

            if changed:
                self.record_session_status(message.get("command"))

    async def submit_answer(self, message: dict) -> None:
        """
        Grades a participant's answer against the live countdown and stores it.
        Only the first answer to each question counts.
        """
        observer = self.live_session.observer
        question, option = get_selected_option(message, self.connection_type, observer)
        if question.question_id in self.answered_questions:
            raise Errors.ALREADY_ANSWERED

        graded = grade_answer(observer, question, option, int(time.time() * 1000))
        stored = self.db_manager.responses.submit_response(
            DbResponse(
                session_id=self.session_id,
                participant_id=self.participant.id,
                **graded.model_dump(),
            )
        )
        self.answered_questions.add(question.question_id)
        if not stored:
            raise Errors.ALREADY_ANSWERED

        logger.debug(
            f"Participant {self.participant.id} answered {question.question_id}: "
            f"{graded.points_earned} points"
        )
        await self.websocket.send_json({"type": "answer", **graded.model_dump()})

    def record_session_status(self, command: Optional[str]) -> None:
        status = COMMAND_SESSION_STATUS.get(command)
        if status is None or self.live_session.authority is None:
            return
        if self.db_session.status == status:
            return
        if status == SessionStatus.ENDED and not self.live_session.observer.is_ended:
            return
        if self.db_manager.sessions.update_session_status(self.session_id, status):
            self.db_session.status = status

    async def forward_state_changes(self) -> None:
        """Push every applied state change to the client."""
        while True:
            state = await self.outbox.get()
            await self.dispatch_to_client(
                get_payload(
                    self.live_session.observer,
                    state=state,
                    leaderboard=self.get_leaderboard(state),
                )
            )
            if state.status == QuizStatus.ENDED:
                raise QuizEndedException

    def get_leaderboard(self, state: QuizState) -> Optional[List[dict]]:
        if state.status not in (QuizStatus.LEADERBOARD, QuizStatus.ENDED):
            return None
        return [
            entry.model_dump()
            for entry in self.db_manager.responses.get_leaderboard(self.session_id)
        ]

    async def heartbeat(self) -> None:
        """Send the current state periodically to keep the connection alive."""
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            await self.dispatch_to_client(get_payload(self.live_session.observer))

    async def send_initial_payload(self) -> None:
        await self.dispatch_to_client(
            get_payload(self.live_session.observer, event="joined")
        )

    async def dispatch_to_client(self, payload: dict) -> None:
        try:
            await self.websocket.send_json(payload)
        except Exception as e:
            logger.error(f"Error dispatching data to client: {e}")
            raise

    def manage_tasks(self) -> List[asyncio.Task]:
        return [
            asyncio.create_task(
                self.listen_to_websocket(), name=f"WS Task for {self.session_id}"
            ),
            asyncio.create_task(
                self.forward_state_changes(),
                name=f"State Task for {self.session_id}",
            ),
            asyncio.create_task(
                self.heartbeat(), name=f"Heartbeat Task for {self.session_id}"
            ),
        ]

    async def close_connection(self, error: Optional[ErrorBase] = None) -> None:
        """
        Release the live session and close the WebSocket with optional error details.
        """
        if self.live_session is not None and self.live_session.is_running:
            self.live_session.observer.remove_listener(self.on_state_change)
            await self.live_session.close()

        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            if error:
                await self.websocket.close(**error.to_websocket_close())
            else:
                await self.websocket.close()
        except RuntimeError as e:
            logger.debug(f"WebSocket already closed: {e}")
