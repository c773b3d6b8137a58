"""Best-effort enrichment of session records from request metadata.

Nothing here is used for security decisions; values only label sessions in
the listing endpoints so users can recognise their devices.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from ipaddress import ip_address
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tokenward.storage.models import DeviceInfo, Location, RequestContext, Session, utcnow

UNKNOWN = "Unknown"

# First-octet ranges mapped to a coarse location label
_IPV4_REGIONS = (
    (1, 126, Location(country="US", city="New York", region="NY")),
    (128, 191, Location(country="CA", city="Toronto", region="ON")),
    (192, 223, Location(country="EU", city="London", region="UK")),
)
_LOCAL = ("Local", "Development", "Local")


def parse_device_info(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo(browser=UNKNOWN, os=UNKNOWN, device=UNKNOWN)
    ua = user_agent.lower()

    browser = UNKNOWN
    if "chrome" in ua and "edg" not in ua:
        browser = "Chrome"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "safari" in ua and "chrome" not in ua:
        browser = "Safari"
    elif "edg" in ua:
        browser = "Edge"
    elif "opera" in ua or "opr" in ua:
        browser = "Opera"

    # iOS user agents also mention "mac os x", so check mobile platforms first
    os_name = UNKNOWN
    if "android" in ua:
        os_name = "Android"
    elif any(token in ua for token in ("iphone", "ipad", "ipod")):
        os_name = "iOS"
    elif "windows nt" in ua:
        os_name = "Windows"
    elif "mac os x" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"

    device = "Desktop"
    if "ipad" in ua:
        device = "Tablet"
    elif "mobile" in ua or "android" in ua:
        device = "Mobile"
    elif "tablet" in ua:
        device = "Tablet"

    return DeviceInfo(browser=browser, os=os_name, device=device)


def location_from_ip(ip: Optional[str]) -> Location:
    """Coarse placeholder geolocation; swap in a GeoIP lookup for real data."""

    if not ip or "localhost" in ip:
        return Location(*_LOCAL)
    try:
        addr = ip_address(ip.strip())
    except ValueError:
        return Location()
    if addr.is_loopback:
        return Location(*_LOCAL)
    if addr.version != 4:
        return Location()
    first_octet = int(str(addr).split(".")[0])
    for low, high, location in _IPV4_REGIONS:
        if low <= first_octet <= high:
            return Location(location.country, location.city, location.region)
    return Location()


def enrich(context: Optional[RequestContext]) -> Tuple[DeviceInfo, Location]:
    context = context or RequestContext()
    return parse_device_info(context.user_agent), location_from_ip(context.ip_address)


def session_security_level(session: Session, now: Optional[datetime] = None) -> str:
    """Classify a session as ``high``, ``medium`` or ``low`` trust.

    Recent activity on a recognised browser is ``high``; sessions older than a
    day or idle for more than twelve hours drop to ``low``.
    """

    now = now or utcnow()
    since_created = now - session.created_at
    since_activity = now - session.last_activity

    level = "medium"
    if since_activity < timedelta(hours=1) and session.device_info.browser != UNKNOWN:
        level = "high"
    if since_created > timedelta(hours=24) or since_activity > timedelta(hours=12):
        level = "low"
    return level


def device_stats(sessions: Iterable[Session]) -> Dict[str, Any]:
    """Count sessions per device type, browser and operating system."""

    devices: Counter = Counter()
    browsers: Counter = Counter()
    systems: Counter = Counter()
    total = 0
    for session in sessions:
        info = session.device_info
        devices[info.device or UNKNOWN] += 1
        browsers[info.browser or UNKNOWN] += 1
        systems[info.os or UNKNOWN] += 1
        total += 1
    return {
        "devices": dict(devices),
        "browsers": dict(browsers),
        "operating_systems": dict(systems),
        "total": total,
    }


def location_stats(sessions: Iterable[Session]) -> Dict[str, Any]:
    countries: Counter = Counter()
    cities: Counter = Counter()
    total = 0
    for session in sessions:
        countries[session.location.country or UNKNOWN] += 1
        cities[session.location.city or UNKNOWN] += 1
        total += 1
    return {"countries": dict(countries), "cities": dict(cities), "total": total}


def security_overview(
    sessions: Iterable[Session], now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Tally sessions by security level; low-trust ones are listed as suspicious."""

    now = now or utcnow()
    levels = {"high": 0, "medium": 0, "low": 0}
    suspicious: List[Dict[str, Any]] = []
    total = 0
    for session in sessions:
        level = session_security_level(session, now)
        levels[level] += 1
        total += 1
        if level == "low":
            suspicious.append(
                {
                    "session_id": session.id,
                    "reason": "low security level",
                    "device_info": session.device_info,
                    "location": session.location,
                    "last_activity": session.last_activity,
                }
            )
    return {
        "total_sessions": total,
        "security_levels": levels,
        "suspicious_sessions": suspicious,
    }
