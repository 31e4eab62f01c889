import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, WebSocket

from livequiz.api.errors import (
    ErrorBase,
    Errors,
    QuizEndedException,
    UserLeftException,
)
from livequiz.api.models import WebSocketManager
from livequiz.api.schemas import SessionLookup
from livequiz.channel.models import create_channel_hub
from livequiz.db.models import DbManager
from livequiz.db.schemas import SessionStatus
from livequiz.generation.models import QuizGenerator
from livequiz.generation.schemas import (
    QuizGenerationResult,
    TextQuizRequest,
    TopicQuizRequest,
)

WEBSOCKET_TIMEOUT = int(os.getenv("WEBSOCKET_TIMEOUT", "3600"))
CHANNEL_BACKEND = os.getenv("CHANNEL_BACKEND", "redis")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "DEBUG").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

quiz_generator = QuizGenerator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager to handle the lifespan of the FastAPI application.
    """
    hub = create_channel_hub(CHANNEL_BACKEND)
    db_manager = DbManager()
    try:
        await hub.start()
        app.state.hub = hub
        app.state.db_manager = db_manager
        yield
    finally:
        await hub.close()
        db_manager.close()


app = FastAPI(lifespan=lifespan)


def get_quiz_generator() -> QuizGenerator:
    return quiz_generator


def get_db_manager(request: Request) -> DbManager:
    return request.app.state.db_manager


@app.websocket("/{session_id}")
async def main_ws(websocket: WebSocket, session_id: str):
    """
    WebSocket endpoint for hosts and participants of a live quiz.
    Handles connection validation, message processing, and resource cleanup.
    """
    manager = WebSocketManager(
        websocket=websocket,
        session_id=session_id,
        db_manager=websocket.app.state.db_manager,
        hub=websocket.app.state.hub,
    )

    await websocket.accept()

    try:
        manager.validate_connection()
        await manager.start_live_session()
    except ErrorBase as e:
        await manager.close_connection(e)
        return

    logger.info(f"{manager.connection_type} connected to session {session_id}")

    try:
        await manager.send_initial_payload()

        tasks = manager.manage_tasks()

        done, pending = await asyncio.wait(
            tasks,
            return_when=asyncio.FIRST_COMPLETED,
            timeout=WEBSOCKET_TIMEOUT,
        )

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exception = task.exception()
            if isinstance(exception, (QuizEndedException, UserLeftException)):
                logger.info(
                    f"Session {session_id} for user {manager.user_id}: {exception.message}"
                )
            elif exception is not None:
                logger.error(
                    f"Task {task.get_name()} for user {manager.user_id} exited with exception {exception}"
                )

    except Exception as e:
        logger.error(f"Error in WS Manager: {e}")
    finally:
        logger.info(f"{manager.connection_type} disconnected from session {session_id}")
        await manager.close_connection()


@app.post("/generate/topic", response_model=QuizGenerationResult)
async def generate_topic_quiz(
    request: TopicQuizRequest,
    generator: QuizGenerator = Depends(get_quiz_generator),
):
    """
    Endpoint to generate quiz questions about a topic.
    """
    return await generator.generate_from_topic(
        request.topic, request.question_count, request.difficulty
    )


@app.post("/generate/text", response_model=QuizGenerationResult)
async def generate_text_quiz(
    request: TextQuizRequest,
    generator: QuizGenerator = Depends(get_quiz_generator),
):
    """
    Endpoint to generate quiz questions from already extracted document text.
    """
    return await generator.generate_from_text(
        request.text, request.question_count, request.difficulty
    )


@app.get("/sessions/code/{code}", response_model=SessionLookup)
def get_session_by_code(code: str, db_manager: DbManager = Depends(get_db_manager)):
    """
    Resolves a shareable join code to the session participants connect to.
    """
    try:
        session = db_manager.sessions.get_session_by_code(code)
    except ErrorBase as e:
        raise e.to_http_exception()

    if session is None:
        raise Errors.SESSION_NOT_FOUND.to_http_exception()
    if session.status == SessionStatus.ENDED:
        raise Errors.SESSION_ENDED.to_http_exception()

    return SessionLookup(
        session_id=session.id,
        code=session.code,
        title=session.title,
        status=session.status.value,
    )


@app.get("/health")
def health():
    return {"status": "ok"}
