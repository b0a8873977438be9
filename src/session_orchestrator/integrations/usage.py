"""Account usage-window lookups over HTTP."""

import json
from dataclasses import dataclass
from datetime import datetime
from urllib import error as urllib_error
from urllib import request as urllib_request

from session_orchestrator.db.models import parse_dt

BETA_HEADER = "oauth-2025-04-20"


class UsageFetchError(Exception):
    """Raised when the usage endpoint cannot be read."""


@dataclass
class UsageWindows:
    pct_5h: float | None = None
    pct_7d: float | None = None
    reset_5h: datetime | None = None
    reset_7d: datetime | None = None


def parse_usage(payload: dict) -> UsageWindows:
    """Extract utilization percentages and reset times per window."""
    windows = UsageWindows()
    five_hour = payload.get("five_hour") or {}
    seven_day = payload.get("seven_day") or {}
    if five_hour.get("utilization") is not None:
        windows.pct_5h = float(five_hour["utilization"])
    if seven_day.get("utilization") is not None:
        windows.pct_7d = float(seven_day["utilization"])
    windows.reset_5h = _parse_reset(five_hour.get("resets_at"))
    windows.reset_7d = _parse_reset(seven_day.get("resets_at"))
    return windows


def _parse_reset(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_dt(value)
    except ValueError:
        return None


def fetch_usage(url: str, token: str, timeout: float = 10.0) -> UsageWindows:
    """GET the usage endpoint with a bearer token and a bounded timeout."""
    req = urllib_request.Request(
        url,
        method="GET",
        headers={
            "Authorization": f"Bearer {token}",
            "anthropic-beta": BETA_HEADER,
            "Accept": "application/json",
            "User-Agent": "session-orchestrator",
        },
    )
    try:
        with urllib_request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
    except urllib_error.HTTPError as e:
        raise UsageFetchError(f"Usage endpoint returned HTTP {e.code}") from e
    except (urllib_error.URLError, TimeoutError, OSError) as e:
        raise UsageFetchError(f"Usage endpoint unreachable: {e}") from e

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise UsageFetchError("Usage endpoint returned invalid JSON") from e
    if not isinstance(payload, dict):
        raise UsageFetchError("Usage endpoint returned an unexpected payload")
    return parse_usage(payload)
