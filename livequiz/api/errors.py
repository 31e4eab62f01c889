import logging

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class ErrorBase(Exception):
    """Base error model with structured information."""

    def __init__(self, status_code: int, error_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message

    def __str__(self):
        return f"status_code:{self.status_code} error_code:{self.error_code} message:{self.message}"

    def to_http_exception(self) -> HTTPException:
        """Convert the error instance to a FastAPI HTTPException."""
        logger.error(f"Http Exception Error {self.error_code}: {self.message}")
        return HTTPException(
            status_code=self.status_code,
            detail={"error_code": self.error_code, "message": self.message},
        )

    def to_websocket_close(self) -> dict:
        """Generate WebSocket close details with a code and reason."""
        logger.error(f"Websocket Close Error {self.error_code}: {self.message}")
        # application close codes live in 4000-4999, anything else is an internal error
        code = self.error_code if 4000 <= self.error_code < 5000 else 1011
        return {"code": code, "reason": self.message}


class Errors:
    MISSING_USER_ID_HEADER = ErrorBase(
        status_code=400, error_code=4001, message="user_id header is missing"
    )
    INVALID_ROLE = ErrorBase(
        status_code=400, error_code=4004, message="role header must be host or participant"
    )
    SESSION_NOT_FOUND = ErrorBase(
        status_code=404, error_code=4040, message="Session not found"
    )
    USER_FORBIDDEN = ErrorBase(
        status_code=403, error_code=4030, message="User is not authorized"
    )
    INVALID_MESSAGE_TYPE = ErrorBase(
        status_code=400,
        error_code=4002,
        message="Invalid message type",
    )
    UNKNOWN_COMMAND = ErrorBase(
        status_code=400,
        error_code=4005,
        message="Unknown quiz command",
    )
    SESSION_ENDED = ErrorBase(
        status_code=400,
        error_code=4003,
        message="Session has already ended",
    )
    ANSWER_NOT_ACCEPTED = ErrorBase(
        status_code=400,
        error_code=4006,
        message="Answers are only accepted while a question is active",
    )
    UNKNOWN_OPTION = ErrorBase(
        status_code=400,
        error_code=4007,
        message="Unknown option for the current question",
    )
    ALREADY_ANSWERED = ErrorBase(
        status_code=409,
        error_code=4009,
        message="Question has already been answered",
    )
    ServerError = ErrorBase(
        status_code=500, error_code=5000, message="Internal Server Error"
    )


class UserLeftException(Exception):
    def __init__(self):
        super().__init__("User Left")
        self.message = "User Left"


class QuizEndedException(Exception):
    def __init__(self):
        super().__init__("Quiz Ended")
        self.message = "Quiz Ended"
