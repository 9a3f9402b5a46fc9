"""
Timezone utilities for scheduling.
Visits are always interpreted in the agency's default timezone; the offset is
fixed (Brazil has no DST since 2019) so parsed times become real instants.
"""
import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):?(\d{2})$")

# Friendly names customers (or the model) use for the default timezone
TIMEZONE_ALIASES = {
    "horario de brasilia": "America/Sao_Paulo",
    "horário de brasília": "America/Sao_Paulo",
    "brasilia": "America/Sao_Paulo",
    "brt": "America/Sao_Paulo",
    "america/sao_paulo": "America/Sao_Paulo",
}


def parse_utc_offset(offset: str) -> timezone:
    """Turn a '-03:00' style string into a fixed-offset tzinfo."""
    match = _OFFSET_RE.match(offset.strip())
    if not match:
        raise ValueError(f"Invalid UTC offset: {offset!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def get_default_tz() -> tzinfo:
    """Fixed-offset tzinfo for the configured default timezone."""
    from src.config import get_settings
    return parse_utc_offset(get_settings().default_utc_offset)


def canonical_timezone_name(name: Optional[str], default: str = "America/Sao_Paulo") -> str:
    """Map free-text timezone hints to an IANA name, falling back to the default."""
    if not name or not name.strip():
        return default
    return TIMEZONE_ALIASES.get(name.strip().lower(), name.strip())


def ensure_aware(value: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Attach the default offset to naive datetimes (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz or get_default_tz())
    return value


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a stored timestamp to an aware UTC datetime.
    Timestamps are always written in UTC; naive values read back are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_local(value: datetime, tz: Optional[tzinfo] = None) -> str:
    """Render an instant in local time for WhatsApp replies: 24/01/2026 às 17:00."""
    local = ensure_aware(value, timezone.utc).astimezone(tz or get_default_tz())
    return local.strftime("%d/%m/%Y às %H:%M")
