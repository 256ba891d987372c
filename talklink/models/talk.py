from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class RoomType(Enum):
    """Room variants supported by the Talk API."""
    EVENT_CONVERSATION = 'EventConversation'
    STANDARD_ROOM = 'StandardRoom'

    @classmethod
    def parse(cls, value):
        """Lenient lookup used for stored metadata; unknown values give None."""
        if isinstance(value, cls):
            return value
        if not value or not isinstance(value, str):
            return None
        text = value.strip().lower()
        for member in cls:
            if member.value.lower() == text or member.name.lower() == text:
                return member
        return None


@dataclass(frozen=True)
class RoomRequest:
    title: str
    room_type: RoomType = RoomType.STANDARD_ROOM
    password: Optional[str] = None
    lobby_enabled: bool = False
    search_visible: bool = False
    appointment_start: Optional[datetime] = None
    appointment_end: Optional[datetime] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class RoomCreationResult:
    room_token: str
    room_url: str
    created_as_event_conversation: bool
    lobby_enabled: bool
    search_visible: bool

    @property
    def room_type(self) -> RoomType:
        if self.created_as_event_conversation:
            return RoomType.EVENT_CONVERSATION
        return RoomType.STANDARD_ROOM


# Keys of the appointment metadata store
PROPERTY_TOKEN = 'talk_room_token'
PROPERTY_ROOM_TYPE = 'talk_room_type'
PROPERTY_LOBBY = 'talk_lobby_enabled'
PROPERTY_SEARCH_VISIBLE = 'talk_search_visible'
PROPERTY_PASSWORD_SET = 'talk_password_set'
PROPERTY_START_EPOCH = 'talk_start_epoch'
PROPERTY_DATA_VERSION = 'talk_data_version'

TALK_PROPERTIES = (
    PROPERTY_TOKEN,
    PROPERTY_ROOM_TYPE,
    PROPERTY_LOBBY,
    PROPERTY_SEARCH_VISIBLE,
    PROPERTY_PASSWORD_SET,
    PROPERTY_START_EPOCH,
    PROPERTY_DATA_VERSION,
)

DATA_VERSION = 1
