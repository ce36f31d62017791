import datetime
import time

__all__ = [
    'Clock',
    'FakeClock',
    'format_time',
    'parse_time',
]


# Kubernetes MicroTime, e.g. 2024-01-15T08:30:00.000000Z
_TIME_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def format_time(timestamp):
    """Render a unix timestamp as RFC 3339 micro time in UTC."""
    if timestamp is None:
        return None
    dt = datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc)
    return dt.strftime(_TIME_FORMAT)


def parse_time(value):
    """Parse RFC 3339 (micro) time as written by us or an API server."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        text = value.replace('Z', '+00:00')
        dt = datetime.datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.timestamp()


class Clock:
    """Wall clock used for leases, autoscaling windows and timestamps."""

    def now(self):
        return time.time()

    def __repr__(self):
        return f'<{self.__class__.__name__} {format_time(self.now())}>'


class FakeClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start=1_700_000_000.0):
        self._now = float(start)

    def now(self):
        return self._now

    def advance(self, seconds):
        self._now += seconds
        return self._now

    def set(self, timestamp):
        self._now = float(timestamp)
