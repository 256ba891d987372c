"""Lifecycle event source of a single appointment object.

The host fires `write` after the appointment was saved, `before_delete` right
before it is removed and `close` when the editor lets go of it (saved or not).
"""
import logging

logger = logging.getLogger(__name__)

WRITE = 'write'
BEFORE_DELETE = 'before_delete'
CLOSE = 'close'

EVENTS = (WRITE, BEFORE_DELETE, CLOSE)


class AppointmentEvents:

    def __init__(self):
        self._handlers = {name: [] for name in EVENTS}

    def connect(self, event, handler):
        self._handlers[event].append(handler)

    def disconnect(self, event, handler):
        handlers = self._handlers[event]
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event=None):
        if event is not None:
            return len(self._handlers[event])
        return sum(len(h) for h in self._handlers.values())

    def fire(self, event):
        # Handlers may disconnect themselves while running
        for handler in list(self._handlers[event]):
            handler()

    def fire_write(self):
        self.fire(WRITE)

    def fire_before_delete(self):
        self.fire(BEFORE_DELETE)

    def fire_close(self):
        self.fire(CLOSE)


def events_for(appointment):
    """Event source attached to `appointment`, created on first use."""
    events = getattr(appointment, '_lifecycle_events', None)
    if events is None:
        events = AppointmentEvents()
        appointment._lifecycle_events = events
    return events
