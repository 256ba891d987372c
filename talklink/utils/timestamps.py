import calendar
from datetime import datetime

import pytz

_DEFAULT_TZ = pytz.utc


def set_default_timezone(name):
    """Zone used for naive datetimes (configured from Config.TIMEZONE)."""
    global _DEFAULT_TZ
    _DEFAULT_TZ = pytz.timezone(name) if name else pytz.utc


def localize(value: datetime) -> datetime:
    if value.tzinfo is None:
        return _DEFAULT_TZ.localize(value)
    return value


def to_unix_timestamp(value):
    """Seconds since the epoch, or None when no datetime is given."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        return None
    aware = localize(value).astimezone(pytz.utc)
    return calendar.timegm(aware.utctimetuple())


def build_event_object_id(start, end):
    """Object id of a calendar event binding: "<startEpoch>#<endEpoch>"."""
    start_epoch = to_unix_timestamp(start)
    end_epoch = to_unix_timestamp(end)
    if start_epoch is None or end_epoch is None:
        return None
    return f"{start_epoch}#{end_epoch}"
