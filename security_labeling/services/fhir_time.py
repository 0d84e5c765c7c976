from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

# FHIR date / dateTime / instant: partial dates are allowed ("2024", "2024-05").
_FHIR_DATETIME_RE = re.compile(
    r"^(?P<year>\d{4})"
    r"(?:-(?P<month>\d{2})"
    r"(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2})(?:\.(?P<fraction>\d+))?)?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?)?)?)?$"
)


def parse_fhir_datetime(value: object) -> Optional[datetime]:
    """Parse a FHIR temporal string into an aware UTC datetime.

    Missing components default to their lowest value and a missing zone is
    read as UTC. Returns None for anything that is not a FHIR date/dateTime.
    """
    if not isinstance(value, str):
        return None
    match = _FHIR_DATETIME_RE.match(value.strip())
    if not match:
        return None

    parts = match.groupdict()
    fraction = (parts["fraction"] or "0")[:6].ljust(6, "0")
    tz = parts["tz"]
    try:
        tzinfo = timezone.utc
        if tz and tz != "Z":
            sign = 1 if tz[0] == "+" else -1
            tzinfo = timezone(sign * timedelta(hours=int(tz[1:3]), minutes=int(tz[4:6])))
        parsed = datetime(
            int(parts["year"]),
            int(parts["month"] or 1),
            int(parts["day"] or 1),
            int(parts["hour"] or 0),
            int(parts["minute"] or 0),
            int(parts["second"] or 0),
            int(fraction),
            tzinfo=tzinfo,
        )
    except ValueError:
        return None

    return parsed.astimezone(timezone.utc)


def format_fhir_instant(value: datetime) -> str:
    """Render an aware datetime as a FHIR instant in UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
