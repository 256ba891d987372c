import json
import logging
from urllib.parse import quote

import requests

from talklink.models.talk import RoomCreationResult, RoomType
from talklink.services.talk_errors import (
    AuthenticationError,
    CallOutcome,
    IncompleteConfigurationError,
    ProtocolViolationError,
    ServerRejectedError,
    TalkServiceError,
    TransportError,
    ignore_result,
)
from talklink.utils.timestamps import build_event_object_id, to_unix_timestamp

logger = logging.getLogger(__name__)

ROOM_TYPE_PUBLIC = 3
LISTABLE_NONE = 0
LISTABLE_USERS = 1

ROOM_API_PATH = '/ocs/v2.php/apps/spreed/api/v4/room'
CAPABILITIES_PATH = '/ocs/v2.php/cloud/capabilities'

DEFAULT_ROOM_NAME = 'Meeting'
DEFAULT_PRODUCT_NAME = 'Nextcloud'

# Statuses that make the event-conversation attempt fall back to a plain room
FALLBACK_STATUSES = frozenset({400, 409, 422, 501})
RECOVERABLE_EVENT_BINDING_STATUSES = frozenset({400, 405, 501})
DELETE_OK_STATUSES = frozenset({200, 204, 404})
AUTH_STATUSES = frozenset({401, 403})


class TalkServiceConfiguration:
    """Connection data needed for the Talk REST calls."""

    def __init__(self, base_url, username, app_password, timeout=60):
        self.base_url = base_url or ''
        self.username = username or ''
        self.app_password = app_password or ''
        self.timeout = timeout

    @classmethod
    def from_mapping(cls, config):
        return cls(
            config.get('NEXTCLOUD_URL'),
            config.get('NEXTCLOUD_USERNAME'),
            config.get('NEXTCLOUD_APP_PASSWORD'),
            timeout=config.get('TALK_REQUEST_TIMEOUT', 60),
        )

    def normalized_base_url(self):
        """Canonical base URL: scheme added if missing, no trailing slash."""
        trimmed = self.base_url.strip()
        if not trimmed:
            return ''
        if not trimmed.lower().startswith(('http://', 'https://')):
            trimmed = 'https://' + trimmed
        return trimmed.rstrip('/')

    def is_complete(self):
        return bool(self.base_url.strip() and self.username.strip() and self.app_password.strip())


class TalkService:
    """
    Performs the HTTP calls against the Nextcloud Talk REST API.

    Every call is synchronous and blocks for at most the configured timeout.
    """

    def __init__(self, configuration):
        if configuration is None:
            raise ValueError("configuration is required")
        self.configuration = configuration

    @classmethod
    def from_config(cls, config):
        return cls(TalkServiceConfiguration.from_mapping(config))

    # ------------------------------------------------------------------
    # Room lifecycle
    # ------------------------------------------------------------------

    def create_room(self, request):
        """
        Creates a Talk room for the given RoomRequest and returns its token and link.

        Event conversations are tried first when the request asks for one and
        carries both start and end. If the server refuses the event binding, a
        standard room is created instead; the result tells which one it was.
        """
        if request is None:
            raise ValueError("request is required")

        self._ensure_configuration()
        base_url = self.configuration.normalized_base_url()
        create_url = base_url + ROOM_API_PATH

        attempts = []
        if (request.room_type is RoomType.EVENT_CONVERSATION
                and request.appointment_start is not None
                and request.appointment_end is not None):
            attempts.append(True)
        attempts.append(False)

        for include_event in attempts:
            try:
                payload = self._build_create_payload(request, include_event)
                status, data, text = self._request('POST', create_url, payload)

                if not is_success(status):
                    if include_event and should_fallback_to_standard(status, data):
                        logger.info("Event conversation refused (HTTP %s), retrying as standard room", status)
                        continue
                    raise_service_error(status, text, data)

                token = extract_room_token(data)
                if not token:
                    raise ProtocolViolationError("Response does not contain a room token.", status, text)

                room_url = f"{base_url}/call/{token}"

                if request.lobby_enabled:
                    self._update_lobby_internal(token, request.appointment_start, base_url, include_event)

                if not include_event:
                    ignore_result(self._update_listable(token, request.search_visible, base_url))

                self._update_description(token, request.description, include_event, base_url)

                return RoomCreationResult(
                    room_token=token,
                    room_url=room_url,
                    created_as_event_conversation=include_event,
                    lobby_enabled=request.lobby_enabled,
                    search_visible=request.search_visible,
                )
            except TalkServiceError as exc:
                if (include_event and not exc.is_authentication_error
                        and exc.status_code in FALLBACK_STATUSES):
                    logger.info("Event conversation failed (%s), retrying as standard room", exc)
                    continue
                raise

        # Not reached: the standard attempt always returns or raises
        raise ServerRejectedError("Talk room could not be created.", 500)

    def update_lobby(self, room_token, start, end, is_event_conversation):
        """Moves the lobby timer (and the event binding of event rooms) to a new start."""
        self._ensure_configuration()
        if not room_token or not room_token.strip():
            return

        base_url = self.configuration.normalized_base_url()
        if is_event_conversation:
            try:
                self._update_event_binding(room_token, start, end, base_url)
            except TalkServiceError as exc:
                if exc.status_code not in RECOVERABLE_EVENT_BINDING_STATUSES:
                    raise
                logger.info("Event binding not updated for %s (HTTP %s)", room_token, exc.status_code)

        self._update_lobby_internal(room_token, start, base_url, is_event_conversation)

    def update_description(self, room_token, description, is_event_conversation):
        if not room_token or not room_token.strip():
            return

        self._ensure_configuration()
        base_url = self.configuration.normalized_base_url()
        self._update_description(room_token, description, is_event_conversation, base_url)

    def delete_room(self, room_token, is_event_conversation):
        """Deletes the room. A room that is already gone (404) counts as deleted."""
        self._ensure_configuration()
        if not room_token or not room_token.strip():
            return

        base_url = self.configuration.normalized_base_url()
        ignore_result(self._clear_active_participants(room_token, base_url))
        if is_event_conversation:
            ignore_result(self._detach_event_binding(room_token, base_url))

        status, _data, text = self._request('DELETE', room_endpoint(base_url, room_token))
        if status not in DELETE_OK_STATUSES:
            raise error_for_status(status, f"Talk room could not be deleted (status {status}).", text)

    def verify_connection(self):
        """Returns (ok, message); message is the server version when it can be read."""
        self._ensure_configuration()

        url = self.configuration.normalized_base_url() + CAPABILITIES_PATH
        status, data, _text = self._request('GET', url)
        if not is_success(status):
            return False, f"HTTP {status}"

        ocs = get_dict(data, 'ocs')
        meta = get_dict(ocs, 'meta')
        payload = get_dict(ocs, 'data')

        version = extract_version(payload)
        if version:
            return True, version
        status_text = get_string(meta, 'status')
        if status_text:
            return True, status_text
        return True, 'OK'

    # ------------------------------------------------------------------
    # Sub-steps
    # ------------------------------------------------------------------

    def _build_create_payload(self, request, include_event):
        title = (request.title or '').strip()
        payload = {
            'roomType': ROOM_TYPE_PUBLIC,
            'type': ROOM_TYPE_PUBLIC,
            'roomName': title or DEFAULT_ROOM_NAME,
            'listable': LISTABLE_USERS if request.search_visible else LISTABLE_NONE,
            'participants': {},
        }

        if request.password and request.password.strip():
            payload['password'] = request.password

        if request.description and request.description.strip():
            payload['description'] = request.description.strip()

        if include_event:
            object_id = build_event_object_id(request.appointment_start, request.appointment_end)
            if object_id:
                payload['objectType'] = 'event'
                payload['objectId'] = object_id

        return payload

    def _update_lobby_internal(self, token, start, base_url, is_event_conversation):
        if not token or not token.strip():
            return

        if is_event_conversation:
            # Lobby handling of event rooms is best-effort
            if self._send_lobby_request(token, base_url, 1, None, silent=True).ok:
                ignore_result(self._send_lobby_request(token, base_url, 1, start, silent=True))
        else:
            self._send_lobby_request(token, base_url, 1, start, silent=False)

    def _send_lobby_request(self, token, base_url, state, start, silent):
        payload = {'state': state}
        timer = to_unix_timestamp(start)
        if timer is not None:
            payload['timer'] = timer

        try:
            status, _data, text = self._request('PUT', room_endpoint(base_url, token, 'webinar/lobby'), payload)
        except TalkServiceError as exc:
            if not silent:
                raise
            return CallOutcome(False, exc.status_code, exc)

        if not is_success(status):
            if not silent:
                raise error_for_status(status, f"Lobby time could not be set (status {status}).", text)
            return CallOutcome(False, status)
        return CallOutcome(True, status)

    def _update_event_binding(self, token, start, end, base_url):
        object_id = build_event_object_id(start, end)
        if not object_id:
            return

        payload = {'objectType': 'event', 'objectId': object_id}
        status, data, text = self._request('PUT', room_endpoint(base_url, token, 'object'), payload)
        if not is_success(status):
            raise_service_error(status, text, data)

    def _update_listable(self, token, search_visible, base_url):
        payload = {'scope': LISTABLE_USERS if search_visible else LISTABLE_NONE}
        return self._best_effort('PUT', room_endpoint(base_url, token, 'listable'), payload)

    def _clear_active_participants(self, token, base_url):
        return self._best_effort('DELETE', room_endpoint(base_url, token, 'participants/active'))

    def _detach_event_binding(self, token, base_url):
        return self._best_effort('DELETE', room_endpoint(base_url, token, 'object/event'))

    def _update_description(self, token, description, is_event_conversation, base_url):
        # Event rooms take their description from the bound calendar object
        if is_event_conversation or description is None:
            return

        payload = {'description': description.strip()}
        status, data, text = self._request('PUT', room_endpoint(base_url, token, 'description'), payload)
        if not is_success(status):
            raise_service_error(status, text, data)

    def _best_effort(self, method, url, payload=None):
        try:
            status, _data, _text = self._request(method, url, payload)
        except TalkServiceError as exc:
            logger.debug("Best-effort %s %s failed: %s", method, url, exc)
            return CallOutcome(False, exc.status_code, exc)
        return CallOutcome(is_success(status), status)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _ensure_configuration(self):
        if not self.configuration.is_complete():
            raise IncompleteConfigurationError("Credentials are incomplete.", 400)

    def _request(self, method, url, payload=None):
        """
        Sends one JSON request. Returns (status_code, parsed_dict_or_None, text).

        Raises TransportError when no HTTP response arrives; HTTP error statuses
        are returned, not raised.
        """
        headers = {
            'Accept': 'application/json',
            'OCS-APIRequest': 'true',
        }
        kwargs = {}
        if method not in ('GET', 'DELETE'):
            kwargs['json'] = payload if payload is not None else {}

        logger.debug("%s %s", method, url)
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                auth=(self.configuration.username, self.configuration.app_password),
                timeout=self.configuration.timeout,
                **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"HTTP connection error: {e}") from e

        status = response.status_code
        logger.debug("%s %s -> %s", method, url, status)

        text = response.text or ''
        return status, parse_json_object(text), text


def room_endpoint(base_url, token, suffix=None):
    url = f"{base_url}{ROOM_API_PATH}/{quote(token.strip(), safe='')}"
    if suffix:
        url += '/' + suffix
    return url


def is_success(status):
    return 200 <= status < 300


def parse_json_object(text):
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def get_dict(parent, key):
    if not isinstance(parent, dict):
        return None
    value = parent.get(key)
    return value if isinstance(value, dict) else None


def get_string(parent, key):
    """String value of `key`; numbers are stringified, nested objects read as missing."""
    if not isinstance(parent, dict):
        return None
    value = parent.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, str):
        return value
    return str(value)


def extract_room_token(data):
    if data is None:
        return None

    payload = get_dict(get_dict(data, 'ocs'), 'data')
    if payload is not None:
        token = get_string(payload, 'token') or get_string(payload, 'roomToken')
        if token:
            return token

    return get_string(data, 'token')


def extract_error_message(data):
    ocs = get_dict(data, 'ocs')
    return get_string(get_dict(ocs, 'meta'), 'message'), get_string(get_dict(ocs, 'data'), 'error')


def error_for_status(status, message, response_text=None):
    if status in AUTH_STATUSES:
        return AuthenticationError(message, status, response_text)
    return ServerRejectedError(message, status, response_text)


def raise_service_error(status, response_text, data):
    message, detail = extract_error_message(data)
    parts = [part for part in (message, detail) if part]
    text = ' / '.join(parts) if parts else f"HTTP {status}"
    raise error_for_status(status, text, response_text)


def should_fallback_to_standard(status, data):
    if status in FALLBACK_STATUSES:
        return True

    message, detail = extract_error_message(data)
    message = message or detail
    if message:
        normalized = message.lower()
        if 'object' in normalized and 'event' in normalized:
            return True
    return False


def build_version_from_parts(data):
    major = get_string(data, 'major')
    if not major:
        return None

    version = major
    minor = get_string(data, 'minor')
    if minor:
        version += '.' + minor
        micro = get_string(data, 'micro')
        if micro:
            version += '.' + micro
    return version


def compose_version(version, edition):
    if not version:
        return None
    if edition:
        return version if edition.lower() == version.lower() else f"{version} ({edition})"
    return version


def ensure_product_prefix(version, payload):
    if not version:
        return None
    prefix = get_string(payload, 'productname') or DEFAULT_PRODUCT_NAME
    if version.lower().startswith(prefix.lower()):
        return version
    return f"{prefix} {version}"


def extract_version(payload):
    """Human readable server version from the capabilities payload, or None."""
    if payload is None:
        return None

    # Flat fields
    result = compose_version(
        get_string(payload, 'versionstring') or get_string(payload, 'version'),
        get_string(payload, 'edition'))
    if result:
        return ensure_product_prefix(result, payload)

    # Nested version object
    version = get_dict(payload, 'version')
    result = compose_version(
        get_string(version, 'string') or build_version_from_parts(version),
        get_string(version, 'edition'))
    if result:
        return ensure_product_prefix(result, payload)

    nextcloud = get_dict(payload, 'nextcloud')
    system = get_dict(nextcloud, 'system')
    if system is not None:
        result = compose_version(
            get_string(system, 'versionstring')
            or get_string(system, 'version')
            or build_version_from_parts(system),
            get_string(system, 'edition'))
        if result:
            product = get_string(system, 'productname') or get_string(nextcloud, 'productname')
            if product:
                return f"{product} {result}"
            return ensure_product_prefix(result, payload)

    return None
