"""
Enrollment/authentication protocol definitions.

Stage order:
    ENROLL_ROUND_1 -> ENROLL_ROUND_2 -> ENROLL_ROUND_3 -> AUTHENTICATE -> idle

Frame format: UTF-8 text. Requests are "<stage label> request",
responses are opaque and only signal that the stage may advance.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .uuids import AUTH_IDS, ENROLL_IDS, FamilyIds

FRAME_ENCODING = "utf-8"


class StageFamily(Enum):
    """Stage groupings that share one service/characteristic pair."""
    ENROLL = "enroll"
    AUTH = "auth"

    @property
    def ids(self) -> FamilyIds:
        return ENROLL_IDS if self is StageFamily.ENROLL else AUTH_IDS


class ProtocolStage(Enum):
    """Protocol stages. Values are the labels used in request frames."""
    ENROLL_ROUND_1 = "Enroll 1"
    ENROLL_ROUND_2 = "Enroll 2"
    ENROLL_ROUND_3 = "Enroll 3"
    AUTHENTICATE = "Authenticate"

    @property
    def label(self) -> str:
        return self.value

    @property
    def family(self) -> StageFamily:
        if self is ProtocolStage.AUTHENTICATE:
            return StageFamily.AUTH
        return StageFamily.ENROLL

    @property
    def request_text(self) -> str:
        return f"{self.label} request"

    def __str__(self) -> str:
        return self.label


class StageAction(Enum):
    """What the engine does after a stage's response arrives."""
    SEND_REQUEST = "send_request"  # same connection, next request
    RESCAN = "rescan"  # new stage family, scan for its service
    FINISH = "finish"  # disconnect and go idle


@dataclass(frozen=True)
class Transition:
    """One row of the response-received transition table."""
    action: StageAction
    next_stage: Optional[ProtocolStage]


TRANSITIONS: dict[ProtocolStage, Transition] = {
    ProtocolStage.ENROLL_ROUND_1: Transition(StageAction.SEND_REQUEST, ProtocolStage.ENROLL_ROUND_2),
    ProtocolStage.ENROLL_ROUND_2: Transition(StageAction.SEND_REQUEST, ProtocolStage.ENROLL_ROUND_3),
    ProtocolStage.ENROLL_ROUND_3: Transition(StageAction.RESCAN, ProtocolStage.AUTHENTICATE),
    ProtocolStage.AUTHENTICATE: Transition(StageAction.FINISH, None),
}

# Stage each trigger starts from
ENROLL_START = ProtocolStage.ENROLL_ROUND_1
AUTH_START = ProtocolStage.AUTHENTICATE


def transition_for(stage: ProtocolStage) -> Transition:
    """Look up what follows a received response in the given stage."""
    return TRANSITIONS[stage]


def build_request(stage: ProtocolStage) -> bytes:
    """Build the request frame for a stage."""
    return stage.request_text.encode(FRAME_ENCODING)


def parse_response(data: bytes) -> str:
    """
    Decode a response frame.

    Content is not validated; undecodable bytes are replaced rather than
    rejected so that any response still advances the stage.
    """
    return bytes(data).decode(FRAME_ENCODING, errors="replace")
