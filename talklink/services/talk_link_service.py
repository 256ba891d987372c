import logging

from talklink.models.talk import (
    DATA_VERSION,
    PROPERTY_DATA_VERSION,
    PROPERTY_LOBBY,
    PROPERTY_PASSWORD_SET,
    PROPERTY_ROOM_TYPE,
    PROPERTY_SEARCH_VISIBLE,
    PROPERTY_START_EPOCH,
    PROPERTY_TOKEN,
    RoomRequest,
    RoomType,
)
from talklink.services.talk_errors import TalkServiceError
from talklink.utils.timestamps import to_unix_timestamp

logger = logging.getLogger(__name__)

BODY_SECTION_HEADER = 'Nextcloud Talk'
BODY_JOIN_LINE = 'Join the meeting now:'
BODY_PASSWORD_PREFIX = 'Password:'
BODY_HELP_QUESTION = 'Need help?'
BODY_HELP_LINK = 'https://docs.nextcloud.com/server/latest/user_manual/en/talk/join_a_call_or_chat_as_guest.html'


class RoomAlreadyLinkedError(ValueError):
    """The appointment already has a room and replacing it was not requested."""


class TalkLinkService:

    @staticmethod
    def build_room_request(appointment, options):
        """
        Builds the RoomRequest for `appointment` from the user's choices.

        `options` keys: title, password, lobby_enabled, search_visible, room_type.
        """
        room_type = RoomType.parse(options.get('room_type')) or RoomType.STANDARD_ROOM
        password = options.get('password') or None
        return RoomRequest(
            title=(options.get('title') or appointment.subject or '').strip(),
            room_type=room_type,
            password=password,
            lobby_enabled=bool(options.get('lobby_enabled', False)),
            search_visible=bool(options.get('search_visible', False)),
            appointment_start=appointment.start_time,
            appointment_end=appointment.end_time,
            description=build_initial_room_description(password),
        )

    @staticmethod
    def create_talk_link(appointment, request, registry, replace=False):
        """
        Creates a room for the appointment and binds the two.

        An existing room is only replaced when `replace` is set; it is deleted
        first and a failing delete aborts the whole action.
        """
        existing_token = appointment.get_user_property(PROPERTY_TOKEN)
        if existing_token and str(existing_token).strip():
            if not replace:
                raise RoomAlreadyLinkedError("The appointment is already linked to a Talk room.")

            existing_type = RoomType.parse(appointment.get_user_property(PROPERTY_ROOM_TYPE))
            logger.info("Replacing room %s", existing_token)
            previous = registry.by_token(existing_token)
            if previous is not None:
                previous.dispose()
            registry.create_service().delete_room(
                existing_token, existing_type is RoomType.EVENT_CONVERSATION)

        result = registry.create_service().create_room(request)
        logger.info("Room created (token=%s, url=%s, event=%s)",
                    result.room_token, result.room_url, result.created_as_event_conversation)

        TalkLinkService.apply_room_to_appointment(appointment, request, result, registry)
        return result

    @staticmethod
    def apply_room_to_appointment(appointment, request, result, registry):
        """Writes the room into the appointment and registers the binding."""
        if request.title and request.title.strip():
            appointment.subject = request.title.strip()

        appointment.location = result.room_url
        appointment.body = update_body_with_talk_block(appointment.body, result.room_url, request.password)

        appointment.set_user_property(PROPERTY_TOKEN, result.room_token)
        # The type the server accepted, which may differ from the requested one
        appointment.set_user_property(PROPERTY_ROOM_TYPE, result.room_type.value)
        appointment.set_user_property(PROPERTY_LOBBY, result.lobby_enabled)
        appointment.set_user_property(PROPERTY_SEARCH_VISIBLE, result.search_visible)
        appointment.set_user_property(PROPERTY_PASSWORD_SET, bool(request.password))

        start_epoch = to_unix_timestamp(appointment.start_time)
        if start_epoch is not None:
            appointment.set_user_property(PROPERTY_START_EPOCH, str(start_epoch))
        appointment.set_user_property(PROPERTY_DATA_VERSION, DATA_VERSION)

        registry.register_result(appointment, result)
        TalkLinkService.push_description(appointment, result.room_token,
                                         result.created_as_event_conversation, registry)

    @staticmethod
    def push_description(appointment, room_token, is_event_conversation, registry):
        description = (appointment.body or '').strip()
        try:
            registry.create_service().update_description(room_token, description, is_event_conversation)
        except TalkServiceError as e:
            registry.warn(f"Room description could not be updated: {e}")
            return False
        return True

    @staticmethod
    def verify_connection(service):
        try:
            return service.verify_connection()
        except TalkServiceError as e:
            if e.is_authentication_error:
                raise
            return False, e.message


def build_initial_room_description(password):
    if not password or not password.strip():
        return ''
    return f"{BODY_PASSWORD_PREFIX} {password.strip()}"


def update_body_with_talk_block(existing_body, room_url, password):
    """Appends the join block to the body, replacing a block added earlier."""
    body = remove_existing_talk_block(existing_body or '')

    lines = [BODY_SECTION_HEADER, '', BODY_JOIN_LINE, room_url or '', '']
    if password and password.strip():
        lines += [f"{BODY_PASSWORD_PREFIX} {password}", '']
    lines += [BODY_HELP_QUESTION, '', BODY_HELP_LINK]
    block = '\n'.join(lines) + '\n'

    if not body:
        return block
    if not body.endswith('\n'):
        body += '\n'
    return body + '\n' + block


def remove_existing_talk_block(body):
    if not body:
        return body

    header_index = body.find(BODY_SECTION_HEADER)
    if header_index < 0:
        return body

    help_index = body.find(BODY_HELP_LINK, header_index)
    if help_index < 0:
        return body

    block_start = header_index
    while block_start > 0 and body[block_start - 1] in '\r\n':
        block_start -= 1

    block_end = help_index + len(BODY_HELP_LINK)
    while block_end < len(body) and body[block_end] in '\r\n \t':
        block_end += 1

    prefix = body[:block_start].rstrip('\r\n')
    suffix = body[block_end:].lstrip('\r\n')

    if not prefix:
        return suffix
    if not suffix:
        return prefix
    return prefix + '\n\n' + suffix
