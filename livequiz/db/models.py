import logging
import os
from typing import List, Optional

import psycopg2
from psycopg2.extras import DictCursor

from livequiz.api.errors import Errors
from livequiz.db.schemas import (
    DbParticipant,
    DbQuestion,
    DbResponse,
    DbSession,
    LeaderboardEntry,
    SessionStatus,
)

logger = logging.getLogger(__name__)

DB_URL = os.getenv("DB_URL")


class BaseRepository:
    def __init__(self, connection: psycopg2.extensions.connection):
        self.connection = connection
        self.cursor = self.connection.cursor(cursor_factory=DictCursor)

    def close(self):
        if self.cursor and not self.cursor.closed:
            self.cursor.close()


class SessionsRepository(BaseRepository):
    SELECT_SESSION = """
        SELECT id, code, host_id, title, status, started_at, ended_at
        FROM sessions
    """

    def get_session(self, session_id: str) -> Optional[DbSession]:
        """
        Gets a session by its id.
        """
        try:
            self.cursor.execute(self.SELECT_SESSION + " WHERE id = %s", (session_id,))
            row = self.cursor.fetchone()
            return DbSession.get_from_db(row) if row else None
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error getting session {session_id}: {e}")
            raise Errors.ServerError

    def get_session_by_code(self, code: str) -> Optional[DbSession]:
        """
        Gets a session by its shareable code, ignoring case.
        """
        try:
            self.cursor.execute(
                self.SELECT_SESSION + " WHERE UPPER(code) = UPPER(%s)", (code,)
            )
            row = self.cursor.fetchone()
            return DbSession.get_from_db(row) if row else None
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error getting session by code {code}: {e}")
            raise Errors.ServerError

    def update_session_status(self, session_id: str, status: SessionStatus) -> bool:
        """
        Updates the session status, stamping the start or end time where it applies.
        """
        try:
            timestamp_column = {
                SessionStatus.ACTIVE: ", started_at = NOW()",
                SessionStatus.ENDED: ", ended_at = NOW()",
            }.get(status, "")
            self.cursor.execute(
                f"""
                UPDATE sessions
                SET status = %s, updated_at = NOW(){timestamp_column}
                WHERE id = %s
                """,
                (status.value, session_id),
            )
            self.connection.commit()
            return self.cursor.rowcount == 1
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error updating status of session {session_id}: {e}")
            return False


class QuestionsRepository(BaseRepository):
    def get_session_questions(self, session_id: str) -> List[DbQuestion]:
        """
        Gets all questions of a session in order, each with its options.
        """
        try:
            self.cursor.execute(
                """
                SELECT q.id, q.session_id, q.question_text, q.question_type,
                       q.order_index, q.time_limit,
                       COALESCE(
                           json_agg(
                               json_build_object(
                                   'id', o.id,
                                   'option_text', o.option_text,
                                   'order_index', o.order_index,
                                   'is_correct', o.is_correct
                               ) ORDER BY o.order_index
                           ) FILTER (WHERE o.id IS NOT NULL),
                           '[]'
                       ) AS options
                FROM questions q
                LEFT JOIN options o ON o.question_id = q.id
                WHERE q.session_id = %s
                GROUP BY q.id
                ORDER BY q.order_index
                """,
                (session_id,),
            )
            rows = self.cursor.fetchall()
            return [DbQuestion.get_from_db(row, row["options"]) for row in rows]
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error getting questions of session {session_id}: {e}")
            raise Errors.ServerError


class ParticipantsRepository(BaseRepository):
    def join_session(
        self, session_id: str, anonymous_id: str, nickname: Optional[str] = None
    ) -> DbParticipant:
        """
        Registers a participant in a session, or refreshes last_seen_at when the
        same anonymous id joins again. A missing nickname becomes "Player N".
        """
        try:
            self.cursor.execute(
                """
                INSERT INTO participants
                    (session_id, anonymous_id, nickname, score, streak, is_blocked)
                VALUES (
                    %s, %s,
                    COALESCE(
                        %s,
                        'Player ' || (
                            SELECT COUNT(*) + 1 FROM participants WHERE session_id = %s
                        )
                    ),
                    0, 0, false
                )
                ON CONFLICT (session_id, anonymous_id)
                DO UPDATE SET last_seen_at = NOW()
                RETURNING id, session_id, anonymous_id, nickname, score, streak, is_blocked
                """,
                (session_id, anonymous_id, nickname, session_id),
            )
            row = self.cursor.fetchone()
            self.connection.commit()
            return DbParticipant.get_from_db(row)
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error joining session {session_id} as {anonymous_id}: {e}")
            raise Errors.ServerError


class ResponsesRepository(BaseRepository):
    def submit_response(self, response: DbResponse) -> bool:
        """
        Stores an answer and updates the participant's score and streak.
        Returns False when the participant already answered this question.
        """
        try:
            self.cursor.execute(
                """
                INSERT INTO responses
                    (session_id, question_id, participant_id, option_id,
                     response_time, is_correct, points_earned)
                SELECT %s, %s, %s, %s, %s, %s, %s
                WHERE NOT EXISTS (
                    SELECT 1 FROM responses
                    WHERE session_id = %s AND question_id = %s AND participant_id = %s
                )
                RETURNING id
                """,
                (
                    response.session_id,
                    response.question_id,
                    response.participant_id,
                    response.option_id,
                    response.response_time,
                    response.is_correct,
                    response.points_earned,
                    response.session_id,
                    response.question_id,
                    response.participant_id,
                ),
            )
            if self.cursor.fetchone() is None:
                self.connection.rollback()
                return False

            if response.is_correct:
                self.cursor.execute(
                    """
                    UPDATE participants
                    SET score = score + %s, streak = streak + 1
                    WHERE id = %s
                    """,
                    (response.points_earned, response.participant_id),
                )
            else:
                self.cursor.execute(
                    "UPDATE participants SET streak = 0 WHERE id = %s",
                    (response.participant_id,),
                )
            self.connection.commit()
            return True
        except Exception as e:
            self.connection.rollback()
            logger.error(
                f"Error submitting response of {response.participant_id} "
                f"to question {response.question_id}: {e}"
            )
            raise Errors.ServerError

    def get_leaderboard(self, session_id: str, limit: int = 50) -> List[LeaderboardEntry]:
        try:
            self.cursor.execute(
                """
                SELECT p.id, p.nickname, p.score, p.streak,
                       COUNT(r.id) FILTER (WHERE r.is_correct) AS correct_answers
                FROM participants p
                LEFT JOIN responses r ON r.participant_id = p.id
                WHERE p.session_id = %s AND NOT p.is_blocked
                GROUP BY p.id
                ORDER BY p.score DESC, p.joined_at
                LIMIT %s
                """,
                (session_id, limit),
            )
            rows = self.cursor.fetchall()
            return [
                LeaderboardEntry.get_from_db(row, rank=index + 1)
                for index, row in enumerate(rows)
            ]
        except Exception as e:
            self.connection.rollback()
            logger.error(f"Error getting leaderboard of session {session_id}: {e}")
            return []


class DbManager:
    def __init__(self, connection: Optional[psycopg2.extensions.connection] = None):
        self.connection = connection or psycopg2.connect(DB_URL)
        self.sessions = SessionsRepository(self.connection)
        self.questions = QuestionsRepository(self.connection)
        self.participants = ParticipantsRepository(self.connection)
        self.responses = ResponsesRepository(self.connection)

    def close(self):
        self.sessions.close()
        self.questions.close()
        self.participants.close()
        self.responses.close()
        if self.connection and not self.connection.closed:
            self.connection.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
