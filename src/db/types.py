from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import TypeDecorator

from src.utils.time import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Cache validity and checkpoint timestamps are compared as instants, so they are kept in UTC.

    SQLite has no timezone-aware datetime: values are written as naive UTC and come back with
    tzinfo attached.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value)
