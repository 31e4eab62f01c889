from enum import StrEnum
from typing import Optional

from pydantic import BaseModel


class WsConnectionType(StrEnum):
    HOST = "host"
    PARTICIPANT = "participant"


class SessionLookup(BaseModel):
    session_id: str
    code: str
    title: Optional[str] = None
    status: str
