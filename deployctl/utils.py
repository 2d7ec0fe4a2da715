from datetime import datetime, timezone, timedelta
from typing import Optional
import re
import time
import uuid

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

_ID_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def parse_duration_to_seconds(s: str) -> int:
    """
    Parse durations like '20s', '5m', '1h30m', '2d3h', or plain seconds
    like '3600' (the unit the config file stores).
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s or not s.strip():
        raise ValueError("duration string is empty")
    if s.strip().isdigit():
        total = int(s.strip())
    else:
        m = DELAY_RE.match(s)
        if not m:
            raise ValueError(f"Invalid duration format: {s!r}")
        d, h, m_, s_ = m.groups()
        total = 0
        if d:  total += int(d) * 86400
        if h:  total += int(h) * 3600
        if m_: total += int(m_) * 60
        if s_: total += int(s_)
    if total <= 0:
        raise ValueError("duration must be > 0 seconds")
    return total


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse a timestamp written by now_iso(); None if it is empty or unreadable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_since(value: str) -> Optional[float]:
    dt = parse_iso(value)
    if dt is None:
        return None
    return (datetime.now(timezone.utc) - dt).total_seconds()


def iso_seconds_ago(seconds: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def branch_from_ref(ref: str) -> str:
    """'refs/heads/main' -> 'main'; plain branch names pass through."""
    ref = (ref or "").strip()
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def make_job_id(project: str, environment: str) -> str:
    """
    Id like 'alpha_production_1762420354_3fa2c1'.

    Project and environment are only there to make the queue readable;
    the random suffix keeps ids unique when two pushes land in the same second.
    """
    safe_project = _ID_UNSAFE.sub("-", project).strip("-.") or "project"
    return f"{safe_project}_{environment}_{int(time.time())}_{uuid.uuid4().hex[:6]}"
