"""Condition evaluators — one pure function per condition field.

Every evaluator takes the read-only EvaluationContext and a Condition and
returns an EvaluatorResult. Evaluators never mutate the context and never do
I/O; locations are resolved onto sessions before a pass starts.
"""

from __future__ import annotations

import ipaddress
import math
from collections.abc import Callable
from datetime import datetime, timezone
from itertools import combinations

from sharewatch.policy.comparisons import compare
from sharewatch.policy.models import Condition, ConditionField
from sharewatch.policy.results import EvaluationContext, EvaluatorResult
from sharewatch.resolve import is_private_ip
from sharewatch.session.models import Session

ConditionEvaluator = Callable[[EvaluationContext, Condition], EvaluatorResult]

EARTH_RADIUS_KM = 6371.0
SECONDS_PER_DAY = 86400

INACTIVITY_UNIT_DAYS = {"days": 1, "weeks": 7, "months": 30}


def distance_km(a: Session, b: Session) -> float | None:
    """Great-circle distance between two sessions' locations (haversine)."""
    if a.geo is None or b.geo is None:
        return None
    if not a.geo.has_coordinates or not b.geo.has_coordinates:
        return None
    lat1, lon1 = math.radians(a.geo.lat), math.radians(a.geo.lon)
    lat2, lon2 = math.radians(b.geo.lat), math.radians(b.geo.lon)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def inactivity_threshold_days(value: int | float, unit: str = "days") -> int:
    """Convert an inactivity setting to days (months count as 30 days)."""
    try:
        factor = INACTIVITY_UNIT_DAYS[unit]
    except KeyError:
        raise ValueError(f"Unknown inactivity unit: {unit}") from None
    return int(value * factor)


def _same_device(a: Session, b: Session) -> bool:
    return bool(a.device_id and b.device_id and a.device_id == b.device_id)


def _user_sessions(
    ctx: EvaluationContext, sessions: tuple[Session, ...]
) -> list[Session]:
    return [s for s in sessions if s.server_user_id == ctx.server_user.id]


def _with_current(ctx: EvaluationContext, sessions: list[Session]) -> list[Session]:
    """User sessions with the triggering session counted exactly once."""
    others = [s for s in sessions if s.id != ctx.session.id]
    return [ctx.session, *others]


def _round(value: float) -> float:
    return value if math.isinf(value) else round(value, 2)


# ---------------------------------------------------------------------------
# Account sharing signals
# ---------------------------------------------------------------------------


def evaluate_concurrent_streams(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    sessions = _with_current(ctx, _user_sessions(ctx, ctx.active_sessions))
    if condition.params.get("exclude_same_device", False):
        current = ctx.session
        sessions = [current] + [
            s for s in sessions[1:] if not _same_device(current, s)
        ]
    count = len(sessions)
    return EvaluatorResult(
        matched=compare(count, condition.operator, condition.value),
        actual=count,
        related_session_ids=tuple(s.id for s in sessions),
    )


def evaluate_impossible_travel(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    current = ctx.session
    lookback = float(condition.params.get("lookback_hours", 24)) * 3600
    cutoff = current.started_at - lookback

    candidates = [
        s
        for s in _user_sessions(ctx, ctx.recent_sessions)
        if s.id != current.id
        and s.started_at <= current.started_at
        and (s.stopped_at or s.last_seen_at) >= cutoff
    ]
    if condition.params.get("exclude_same_device", False):
        candidates = [s for s in candidates if not _same_device(current, s)]
    candidates.sort(key=lambda s: s.started_at, reverse=True)

    if not candidates:
        return EvaluatorResult(
            matched=compare(0, condition.operator, condition.value), actual=0
        )

    previous = candidates[0]
    distance = distance_km(current, previous)
    if distance is None:
        return EvaluatorResult(
            matched=compare(0, condition.operator, condition.value),
            actual=0,
            related_session_ids=(previous.id,),
        )

    previous_end = previous.stopped_at or previous.last_seen_at
    elapsed_hours = (current.started_at - previous_end) / 3600
    if elapsed_hours <= 0:
        speed = math.inf if distance > 0 else 0.0
    else:
        speed = distance / elapsed_hours

    return EvaluatorResult(
        matched=compare(speed, condition.operator, condition.value),
        actual=_round(speed),
        related_session_ids=(previous.id,),
        details={
            "distance_km": _round(distance),
            "elapsed_hours": round(max(elapsed_hours, 0.0), 2),
            "previous_location": _location(previous),
            "current_location": _location(current),
        },
    )


def evaluate_simultaneous_locations(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    sessions = _with_current(ctx, _user_sessions(ctx, ctx.active_sessions))
    exclude_same_device = condition.params.get("exclude_same_device", False)

    max_distance = 0.0
    distances: dict[str, float] = {}
    involved: list[str] = []
    for a, b in combinations(sessions, 2):
        if exclude_same_device and _same_device(a, b):
            continue
        d = distance_km(a, b)
        if d is None:
            continue
        distances[f"{a.id}|{b.id}"] = _round(d)
        max_distance = max(max_distance, d)
        if compare(d, condition.operator, condition.value):
            for sid in (a.id, b.id):
                if sid not in involved:
                    involved.append(sid)

    return EvaluatorResult(
        matched=compare(max_distance, condition.operator, condition.value),
        actual=_round(max_distance),
        related_session_ids=tuple(involved),
        details={"distances": distances},
    )


def evaluate_device_velocity(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    current = ctx.session
    window_hours = float(condition.params.get("window_hours", 24))
    by = condition.params.get("by", "device")
    cutoff = current.started_at - window_hours * 3600

    in_window = [
        s for s in _user_sessions(ctx, ctx.recent_sessions) if s.started_at >= cutoff
    ]
    fingerprints: list[str] = []
    for s in _with_current(ctx, in_window):
        if by == "ip":
            fp = s.ip_address or "unknown"
        else:
            fp = s.device_id or s.player_name or "unknown"
        if fp not in fingerprints:
            fingerprints.append(fp)

    return EvaluatorResult(
        matched=compare(len(fingerprints), condition.operator, condition.value),
        actual=len(fingerprints),
        details={"by": by, "fingerprints": fingerprints, "window_hours": window_hours},
    )


def evaluate_geo_restriction(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    geo = ctx.session.geo
    if geo is None or geo.is_private or not geo.country:
        # Local or unresolvable addresses never trip a geography rule.
        return EvaluatorResult(
            matched=False,
            actual=None,
            details={"reason": "private" if geo and geo.is_private else "unresolved"},
        )
    return EvaluatorResult(
        matched=compare(geo.country, condition.operator, condition.value),
        actual=geo.country,
        details={
            "mode": condition.params.get("mode", "blocklist"),
            "city": geo.city,
        },
    )


def evaluate_account_inactivity(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    user = ctx.server_user
    last_seen = [
        s.stopped_at or s.last_seen_at
        for s in _user_sessions(ctx, ctx.recent_sessions)
        if s.id != ctx.session.id
    ]
    if user.last_activity_at is not None:
        last_seen.append(user.last_activity_at)

    details: dict = {
        "username": user.username,
        "threshold_days": condition.value,
    }
    if not last_seen:
        details.update(never_active=True, inactive_days=None, last_activity_at=None)
        return EvaluatorResult(matched=True, actual=None, details=details)

    last_activity = max(last_seen)
    inactive_days = int((ctx.now - last_activity) // SECONDS_PER_DAY)
    details.update(
        never_active=False,
        inactive_days=inactive_days,
        last_activity_at=datetime.fromtimestamp(
            last_activity, tz=timezone.utc
        ).isoformat(),
    )
    return EvaluatorResult(
        matched=compare(inactive_days, condition.operator, condition.value),
        actual=inactive_days,
        details=details,
    )


# ---------------------------------------------------------------------------
# Session and user attributes
# ---------------------------------------------------------------------------


def evaluate_country(ctx: EvaluationContext, condition: Condition) -> EvaluatorResult:
    country = ctx.session.country or ""
    return EvaluatorResult(
        matched=compare(country, condition.operator, condition.value),
        actual=country,
    )


def evaluate_media_type(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    return EvaluatorResult(
        matched=compare(ctx.session.media_type, condition.operator, condition.value),
        actual=ctx.session.media_type,
    )


def evaluate_is_transcoding(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    return EvaluatorResult(
        matched=compare(ctx.session.is_transcode, condition.operator, condition.value),
        actual=ctx.session.is_transcode,
    )


def evaluate_is_local_network(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    geo = ctx.session.geo
    is_local = geo.is_private if geo else is_private_ip(ctx.session.ip_address)
    return EvaluatorResult(
        matched=compare(is_local, condition.operator, condition.value),
        actual=is_local,
    )


def evaluate_ip_in_range(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    ip = ctx.session.ip_address
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return EvaluatorResult(matched=False, actual=ip or None)

    ranges = condition.value
    if isinstance(ranges, str):
        ranges = [ranges]
    inside = False
    for cidr in ranges or ():
        try:
            if addr in ipaddress.ip_network(str(cidr), strict=False):
                inside = True
                break
        except ValueError:
            continue

    negate = condition.operator.value in ("not_in", "neq")
    return EvaluatorResult(matched=inside != negate, actual=ip)


def evaluate_server_id(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    return EvaluatorResult(
        matched=compare(ctx.server.id, condition.operator, condition.value),
        actual=ctx.server.id,
    )


def evaluate_trust_score(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    score = ctx.server_user.trust_score
    return EvaluatorResult(
        matched=compare(score, condition.operator, condition.value), actual=score
    )


def evaluate_account_age_days(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    age = int((ctx.now - ctx.server_user.created_at) // SECONDS_PER_DAY)
    return EvaluatorResult(
        matched=compare(age, condition.operator, condition.value), actual=age
    )


def evaluate_user_id(ctx: EvaluationContext, condition: Condition) -> EvaluatorResult:
    user_id = ctx.server_user.vendor_id
    return EvaluatorResult(
        matched=compare(user_id, condition.operator, condition.value), actual=user_id
    )


# ---------------------------------------------------------------------------
# Device and client
# ---------------------------------------------------------------------------

_TV_PLATFORM_HINTS = ("tv", "roku", "webos", "tizen", "firetv", "chromecast")
_BROWSER_HINTS = ("browser", "chrome", "firefox", "safari", "edge")
_DESKTOP_PLATFORMS = ("windows", "macos", "linux")


def normalize_device_type(device: str | None, platform: str | None) -> str:
    """Bucket a device/platform pair into tv, mobile, tablet, desktop or browser."""
    device = (device or "").lower()
    platform = (platform or "").lower()
    is_tablet = "ipad" in device or "tablet" in device

    if "tv" in device or any(hint in platform for hint in _TV_PLATFORM_HINTS):
        return "tv"
    if "phone" in device or platform in ("ios", "android"):
        return "tablet" if is_tablet else "mobile"
    if is_tablet:
        return "tablet"
    if any(name in platform for name in _DESKTOP_PLATFORMS):
        return "desktop"
    if any(hint in device for hint in _BROWSER_HINTS):
        return "browser"
    return "unknown"


def normalize_platform(platform: str | None) -> str:
    """Map a vendor platform string onto a small fixed vocabulary."""
    if not platform:
        return "unknown"
    lower = platform.lower()
    if "ios" in lower or lower in ("iphone", "ipad"):
        return "ios"
    if "android" in lower:
        return "androidtv" if "tv" in lower else "android"
    if "windows" in lower:
        return "windows"
    if "macos" in lower or "mac os" in lower or lower == "darwin":
        return "macos"
    if "linux" in lower:
        return "linux"
    if "tvos" in lower or "apple tv" in lower:
        return "tvos"
    for name in ("roku", "webos", "tizen"):
        if name in lower:
            return name
    return "unknown"


def evaluate_platform(ctx: EvaluationContext, condition: Condition) -> EvaluatorResult:
    platform = normalize_platform(ctx.session.platform)
    return EvaluatorResult(
        matched=compare(platform, condition.operator, condition.value), actual=platform
    )


def evaluate_device_type(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    device_type = normalize_device_type(ctx.session.device, ctx.session.platform)
    return EvaluatorResult(
        matched=compare(device_type, condition.operator, condition.value),
        actual=device_type,
    )


def evaluate_client_name(
    ctx: EvaluationContext, condition: Condition
) -> EvaluatorResult:
    # Product ("Plex for iOS") when reported, otherwise the player's own name.
    client = ctx.session.product or ctx.session.player_name or ""
    return EvaluatorResult(
        matched=compare(client, condition.operator, condition.value), actual=client
    )


def _location(session: Session) -> dict:
    geo = session.geo
    if geo is None:
        return {}
    return {"lat": geo.lat, "lon": geo.lon, "city": geo.city, "country": geo.country}


EVALUATORS: dict[ConditionField, ConditionEvaluator] = {
    ConditionField.CONCURRENT_STREAMS: evaluate_concurrent_streams,
    ConditionField.IMPOSSIBLE_TRAVEL: evaluate_impossible_travel,
    ConditionField.SIMULTANEOUS_LOCATIONS: evaluate_simultaneous_locations,
    ConditionField.DEVICE_VELOCITY: evaluate_device_velocity,
    ConditionField.GEO_RESTRICTION: evaluate_geo_restriction,
    ConditionField.ACCOUNT_INACTIVITY: evaluate_account_inactivity,
    ConditionField.COUNTRY: evaluate_country,
    ConditionField.MEDIA_TYPE: evaluate_media_type,
    ConditionField.IS_TRANSCODING: evaluate_is_transcoding,
    ConditionField.IS_LOCAL_NETWORK: evaluate_is_local_network,
    ConditionField.IP_IN_RANGE: evaluate_ip_in_range,
    ConditionField.SERVER_ID: evaluate_server_id,
    ConditionField.TRUST_SCORE: evaluate_trust_score,
    ConditionField.ACCOUNT_AGE_DAYS: evaluate_account_age_days,
    ConditionField.USER_ID: evaluate_user_id,
    ConditionField.PLATFORM: evaluate_platform,
    ConditionField.DEVICE_TYPE: evaluate_device_type,
    ConditionField.CLIENT_NAME: evaluate_client_name,
}
