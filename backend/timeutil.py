import re
import uuid
from datetime import datetime
from typing import Optional

_HM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def new_id() -> str:
    return str(uuid.uuid4())


def now_local() -> datetime:
    """Naive local time; day keys and minute-of-day are computed in local time."""
    return datetime.now()


def day_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def is_hm(value: Optional[str]) -> bool:
    """Strict 24h check for new input; stored values go through the lenient parse_hm."""
    match = _HM_RE.match(str(value or "").strip())
    return match is not None and int(match.group(1)) <= 23 and int(match.group(2)) <= 59


def parse_hm(value: Optional[str]) -> int:
    """
    Minutes since midnight for an "H:MM"/"HH:MM" string.
    Hours are clamped to 0..23 and minutes to 0..59; malformed input is 0.
    """
    match = _HM_RE.match(str(value or "").strip())
    if not match:
        return 0
    hours = max(0, min(23, int(match.group(1))))
    minutes = max(0, min(59, int(match.group(2))))
    return hours * 60 + minutes


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO timestamp into naive local time.
    Aware values (e.g. "...Z" from older data) are converted; garbage returns None.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
