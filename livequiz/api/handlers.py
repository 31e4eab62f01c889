import logging
from typing import Callable, Dict, List, Optional, Tuple

from livequiz.api.errors import Errors, UserLeftException
from livequiz.api.schemas import WsConnectionType
from livequiz.quiz.authority import QuizAuthority
from livequiz.quiz.schemas import LiveOption, LiveQuestion, QuizState, QuizStatus
from livequiz.quiz.state import QuizObserver

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict, QuizAuthority], bool]

COMMAND_HANDLERS: Dict[str, CommandHandler] = {}


def register_command_handler(command: str):
    def add_to_mapping_dict(func):
        COMMAND_HANDLERS[command] = func
        return func

    return add_to_mapping_dict


def get_optional_int(message: dict, key: str) -> Optional[int]:
    value = message.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise Errors.INVALID_MESSAGE_TYPE
    return value


@register_command_handler("start-quiz")
def handle_start_quiz(message: dict, authority: QuizAuthority) -> bool:
    return authority.start_quiz()


@register_command_handler("start-question")
def handle_start_question(message: dict, authority: QuizAuthority) -> bool:
    index = get_optional_int(message, "index")
    if index is None:
        raise Errors.INVALID_MESSAGE_TYPE
    return authority.start_question(index, get_optional_int(message, "time_limit"))


@register_command_handler("pause-timer")
def handle_pause_timer(message: dict, authority: QuizAuthority) -> bool:
    return authority.pause_timer()


@register_command_handler("resume-timer")
def handle_resume_timer(message: dict, authority: QuizAuthority) -> bool:
    return authority.resume_timer()


@register_command_handler("reveal-answers")
def handle_reveal_answers(message: dict, authority: QuizAuthority) -> bool:
    return authority.reveal_answers()


@register_command_handler("show-leaderboard")
def handle_show_leaderboard(message: dict, authority: QuizAuthority) -> bool:
    return authority.show_leaderboard()


@register_command_handler("next-question")
def handle_next_question(message: dict, authority: QuizAuthority) -> bool:
    return authority.next_question()


@register_command_handler("previous-question")
def handle_previous_question(message: dict, authority: QuizAuthority) -> bool:
    return authority.previous_question()


@register_command_handler("end-quiz")
def handle_end_quiz(message: dict, authority: QuizAuthority) -> bool:
    return authority.end_quiz()


def handle_message(
    message: dict,
    connection_type: WsConnectionType,
    authority: Optional[QuizAuthority],
) -> bool:
    """
    Routes one message received from a WebSocket client.
    Commands are only carried out for the host, anything a participant sends
    besides leaving is dropped. Returns whether the quiz state changed.
    """
    if not isinstance(message, dict):
        raise Errors.INVALID_MESSAGE_TYPE

    message_type = message.get("type")
    if message_type == "leave":
        raise UserLeftException
    if message_type != "command":
        raise Errors.INVALID_MESSAGE_TYPE

    if connection_type != WsConnectionType.HOST or authority is None:
        logger.warning(
            f"Ignoring command {message.get('command')} from a {connection_type} connection"
        )
        return False

    command = message.get("command")
    if command not in COMMAND_HANDLERS:
        raise Errors.UNKNOWN_COMMAND

    changed = COMMAND_HANDLERS[command](message, authority)
    if not changed:
        logger.debug(f"Command {command} did not apply in status {authority.status}")
    return changed


def get_selected_option(
    message: dict,
    connection_type: WsConnectionType,
    observer: QuizObserver,
) -> Tuple[LiveQuestion, LiveOption]:
    """
    Resolves the option a participant picked for the current question.
    Answers are only taken while the question is active, so a late answer
    after the reveal is refused.
    """
    if connection_type != WsConnectionType.PARTICIPANT:
        raise Errors.USER_FORBIDDEN
    if not observer.is_active:
        raise Errors.ANSWER_NOT_ACCEPTED

    question = observer.current_question
    if question is None:
        raise Errors.ANSWER_NOT_ACCEPTED
    question_id = message.get("question_id")
    if question_id is not None and question_id != question.question_id:
        raise Errors.ANSWER_NOT_ACCEPTED

    option_id = message.get("option_id")
    if not isinstance(option_id, str):
        raise Errors.INVALID_MESSAGE_TYPE
    option = question.get_option(option_id)
    if option is None:
        raise Errors.UNKNOWN_OPTION
    return question, option


def get_payload(
    observer: QuizObserver,
    event: Optional[str] = None,
    state: Optional[QuizState] = None,
    leaderboard: Optional[List[dict]] = None,
) -> dict:
    """
    Gets the payload sent to a WebSocket client for a quiz state,
    the observer's current one unless given.
    """
    state = state or observer.state
    return {
        "type": "end" if state.status == QuizStatus.ENDED else "state",
        "quiz_state": state.client_model_dump_json(),
        "total_questions": observer.total_questions,
        "can_go_next": observer.can_go_next,
        "can_go_previous": observer.can_go_previous,
        "event": event,
        "leaderboard": leaderboard,
    }
