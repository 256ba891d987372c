"""
Keeps Talk rooms in sync with the appointments they belong to.

A BindingRegistry owns every live AppointmentBinding and indexes it three
ways: by an internal key, by room token and by appointment identity. For any
live binding all three views point back at it, and no token or identity is
ever claimed by two bindings.

The identity of an appointment (its entry id) is only assigned on the first
save, so a binding created for a draft is re-keyed after its first write.

The appointment handed to the registry must provide `entry_id`,
`is_organizer`, `saved`, `start_time`, `end_time`, `body` and the metadata
accessors `get_user_property` / `set_user_property` / `remove_user_property`.
"""
import logging
import threading
import uuid
from datetime import datetime, timedelta

from talklink.models.talk import (
    PROPERTY_LOBBY,
    PROPERTY_ROOM_TYPE,
    PROPERTY_START_EPOCH,
    PROPERTY_TOKEN,
    TALK_PROPERTIES,
    RoomType,
)
from talklink.services.appointment_events import BEFORE_DELETE, CLOSE, WRITE, events_for
from talklink.services.talk_errors import TalkServiceError
from talklink.utils.timestamps import to_unix_timestamp

logger = logging.getLogger(__name__)


def _normalize(value):
    if value is None:
        return None
    value = str(value)
    return value.lower() if value.strip() else None


def as_bool(value):
    """Reads a flag from the metadata store (bool, number or text)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ('true', 'yes', 'on'):
            return True
        try:
            return int(text) != 0
        except ValueError:
            return False
    return False


def _parse_epoch(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def clear_talk_properties(appointment):
    for name in TALK_PROPERTIES:
        appointment.remove_user_property(name)


class BindingRegistry:
    """
    Process-wide table of appointment <-> room bindings.

    `service_factory` returns a TalkService for the current settings; `warn`
    receives messages meant for the user (failed best-effort updates).
    """

    def __init__(self, service_factory, warn=None):
        self._service_factory = service_factory
        self._warn = warn
        # Guards the three views as one unit; re-entrant because dispose()
        # calls back into unregister() while register() holds the lock.
        self._lock = threading.RLock()
        self._by_key = {}
        self._by_token = {}
        self._by_identity = {}

    def __len__(self):
        return len(self._by_key)

    def bindings(self):
        with self._lock:
            return list(self._by_key.values())

    def by_key(self, key):
        return self._by_key.get(key)

    def by_token(self, room_token):
        return self._by_token.get(_normalize(room_token))

    def by_identity(self, identity):
        return self._by_identity.get(_normalize(identity))

    def create_service(self):
        return self._service_factory()

    def warn(self, message):
        logger.warning(message)
        if self._warn is not None:
            self._warn(message)

    def register(self, appointment, room_token, lobby_enabled, is_event_conversation, events=None):
        """
        Binds `appointment` to `room_token`.

        Registering the same appointment object again returns the existing
        binding untouched. A binding held by another object for the same
        identity or token is disposed first.
        """
        if appointment is None or not room_token or not room_token.strip():
            return None

        logger.info("Registering binding (token=%s, lobby=%s, event=%s)",
                    room_token, lobby_enabled, is_event_conversation)
        with self._lock:
            identity = appointment.entry_id
            existing = self.by_identity(identity)
            if existing is not None:
                if existing.is_for(appointment):
                    return existing
                existing.dispose()

            existing = self.by_token(room_token)
            if existing is not None:
                if existing.is_for(appointment):
                    return existing
                existing.dispose()

            binding = AppointmentBinding(
                registry=self,
                appointment=appointment,
                events=events if events is not None else events_for(appointment),
                key=uuid.uuid4().hex,
                room_token=room_token,
                lobby_enabled=lobby_enabled,
                is_event_conversation=is_event_conversation,
                identity=identity,
            )
            self._by_key[binding.key] = binding
            self._by_token[_normalize(room_token)] = binding
            if _normalize(identity):
                self._by_identity[_normalize(identity)] = binding
            return binding

    def register_result(self, appointment, result, events=None):
        """Registers a binding for a freshly created room."""
        if result is None:
            return None
        return self.register(appointment, result.room_token, result.lobby_enabled,
                             result.created_as_event_conversation, events=events)

    def ensure_binding(self, appointment, events=None):
        """
        Binds an appointment that already carries room metadata (on load).

        A binding for the same token and identity is moved onto the reloaded
        object with its state intact. Returns None when the appointment has
        no room token.
        """
        if appointment is None:
            return None

        room_token = appointment.get_user_property(PROPERTY_TOKEN)
        if not room_token or not str(room_token).strip():
            return None
        room_token = str(room_token)

        with self._lock:
            existing = self.by_identity(appointment.entry_id) or self.by_token(room_token)
            if (existing is not None and existing.matches_token(room_token)
                    and _normalize(existing.identity) == _normalize(appointment.entry_id)):
                if not existing.is_for(appointment):
                    existing.attach(appointment, events if events is not None else events_for(appointment))
                return existing

            # Identity moved to another room, or token now claimed by another identity
            existing = self.by_identity(appointment.entry_id)
            if existing is not None:
                existing.dispose()
            existing = self.by_token(room_token)
            if existing is not None:
                existing.dispose()

            room_type = RoomType.parse(appointment.get_user_property(PROPERTY_ROOM_TYPE))
            binding = self.register(
                appointment,
                room_token,
                as_bool(appointment.get_user_property(PROPERTY_LOBBY)),
                room_type is RoomType.EVENT_CONVERSATION,
                events=events,
            )
            stored_epoch = _parse_epoch(appointment.get_user_property(PROPERTY_START_EPOCH))
            if stored_epoch is not None:
                binding.last_lobby_timer = stored_epoch
            return binding

    def refresh_identity(self, binding):
        """Re-keys the identity view after the appointment got (or changed) its entry id."""
        with self._lock:
            old_identity = binding.identity
            new_identity = binding.appointment.entry_id
            if _normalize(old_identity) == _normalize(new_identity):
                return

            old_key = _normalize(old_identity)
            if old_key and self._by_identity.get(old_key) is binding:
                del self._by_identity[old_key]

            binding.update_identity(new_identity)

            new_key = _normalize(new_identity)
            if new_key:
                existing = self._by_identity.get(new_key)
                if existing is not None and existing is not binding:
                    existing.dispose()
                self._by_identity[new_key] = binding

    def unregister(self, binding):
        logger.info("Removing binding (token=%s, identity=%s)", binding.room_token, binding.identity or 'n/a')
        with self._lock:
            if self._by_key.get(binding.key) is binding:
                del self._by_key[binding.key]

            token_key = _normalize(binding.room_token)
            if token_key and self._by_token.get(token_key) is binding:
                del self._by_token[token_key]

            identity_key = _normalize(binding.identity)
            if identity_key and self._by_identity.get(identity_key) is binding:
                del self._by_identity[identity_key]

    def dispose_all(self):
        for binding in self.bindings():
            binding.dispose()


class AppointmentBinding:
    """Reacts to the lifecycle events of one appointment bound to one room."""

    def __init__(self, registry, appointment, events, key, room_token,
                 lobby_enabled, is_event_conversation, identity):
        self.registry = registry
        self.appointment = appointment
        self.events = events
        self.key = key
        self.room_token = room_token
        self.lobby_enabled = lobby_enabled
        self.is_event_conversation = is_event_conversation
        self.identity = identity
        self.last_lobby_timer = to_unix_timestamp(appointment.start_time)
        self.room_deleted = False
        self.disposed = False

        events.connect(WRITE, self.on_write)
        events.connect(BEFORE_DELETE, self.on_before_delete)
        events.connect(CLOSE, self.on_close)

        logger.debug("Binding created (token=%s, lobby=%s, event=%s, identity=%s)",
                     room_token, lobby_enabled, is_event_conversation, identity or 'n/a')

    def is_for(self, appointment):
        return appointment is not None and appointment is self.appointment

    def matches_token(self, room_token):
        return _normalize(room_token) == _normalize(self.room_token)

    def attach(self, appointment, events):
        """Moves the handlers onto a reloaded copy of the bound appointment."""
        self.events.disconnect(WRITE, self.on_write)
        self.events.disconnect(BEFORE_DELETE, self.on_before_delete)
        self.events.disconnect(CLOSE, self.on_close)

        self.appointment = appointment
        self.events = events
        events.connect(WRITE, self.on_write)
        events.connect(BEFORE_DELETE, self.on_before_delete)
        events.connect(CLOSE, self.on_close)
        logger.debug("Binding re-attached (token=%s, identity=%s)", self.room_token, self.identity or 'n/a')

    def update_identity(self, identity):
        self.identity = identity
        logger.debug("Binding identity updated (token=%s, identity=%s)", self.room_token, identity or 'n/a')

    # Lifecycle handlers

    def on_write(self):
        if not self.room_token or not self.room_token.strip():
            logger.debug("Write ignored (no token)")
            return

        if not self.appointment.is_organizer:
            logger.debug("Write ignored (not organizer, token=%s)", self.room_token)
            return

        logger.debug("Write for token=%s", self.room_token)

        if self.lobby_enabled:
            current = to_unix_timestamp(self.appointment.start_time)
            if current is not None and current != self.last_lobby_timer:
                if self._update_lobby():
                    self.last_lobby_timer = current
                    self.appointment.set_user_property(PROPERTY_START_EPOCH, str(current))

        self._update_description()
        self.registry.refresh_identity(self)

    def on_before_delete(self):
        if not self.appointment.is_organizer:
            # The row goes away, but the room is not ours to delete
            logger.debug("Before-delete for non-organizer, releasing binding (token=%s)", self.room_token)
            self.dispose()
            return

        self.ensure_room_deleted()
        self.dispose()

    def on_close(self):
        if not self.appointment.is_organizer:
            self.dispose()
            return

        if not self.room_deleted and not self.appointment.saved:
            logger.info("Closed without saving, deleting room (token=%s)", self.room_token)
            self.ensure_room_deleted()
            clear_talk_properties(self.appointment)
            self.dispose()
            return

        logger.debug("Close handled (token=%s, deleted=%s)", self.room_token, self.room_deleted)

    def ensure_room_deleted(self):
        """Deletes the remote room once. Returns whether the room is gone."""
        if self.room_deleted or not self.appointment.is_organizer:
            return self.room_deleted

        if self._delete_room():
            clear_talk_properties(self.appointment)
            self.room_deleted = True
        return self.room_deleted

    def dispose(self):
        if self.disposed:
            logger.debug("Dispose called again (token=%s)", self.room_token)
            return

        self.disposed = True
        self.events.disconnect(WRITE, self.on_write)
        self.events.disconnect(BEFORE_DELETE, self.on_before_delete)
        self.events.disconnect(CLOSE, self.on_close)
        self.registry.unregister(self)

    # Remote calls; failures become user warnings

    def _update_lobby(self):
        start = self.appointment.start_time or datetime.now()
        end = self.appointment.end_time or start + timedelta(hours=1)
        try:
            self.registry.create_service().update_lobby(self.room_token, start, end, self.is_event_conversation)
        except TalkServiceError as e:
            self.registry.warn(f"Lobby could not be updated: {e}")
            return False
        logger.info("Lobby updated (token=%s)", self.room_token)
        return True

    def _update_description(self):
        description = (self.appointment.body or '').strip()
        try:
            self.registry.create_service().update_description(
                self.room_token, description, self.is_event_conversation)
        except TalkServiceError as e:
            self.registry.warn(f"Room description could not be updated: {e}")
            return False
        return True

    def _delete_room(self):
        logger.info("Deleting room (token=%s, event=%s)", self.room_token, self.is_event_conversation)
        try:
            self.registry.create_service().delete_room(self.room_token, self.is_event_conversation)
        except TalkServiceError as e:
            self.registry.warn(f"Talk room could not be deleted: {e}")
            return False
        return True
