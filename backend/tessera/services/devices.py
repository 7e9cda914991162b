"""Device descriptors derived from incoming requests."""
from dataclasses import asdict, dataclass
import hashlib
import hmac
import json

from fastapi import Request

from tessera.config import get_settings


@dataclass(frozen=True)
class DeviceDescriptor:
    """Metadata identifying the device/browser a session was opened from."""

    user_agent: str = ""
    ip_address: str | None = None
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"
    fingerprint: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> "DeviceDescriptor":
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except ValueError:
            return cls()
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


def extract_browser(user_agent: str) -> str:
    if not user_agent:
        return "Unknown"
    # Edge and Opera also advertise Chrome, so check them first.
    if "Edg" in user_agent:
        return "Edge"
    if "OPR" in user_agent or "Opera" in user_agent:
        return "Opera"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Unknown"


def extract_os(user_agent: str) -> str:
    if not user_agent:
        return "Unknown"
    if "Windows" in user_agent:
        return "Windows"
    if "Android" in user_agent:
        return "Android"
    if "iPhone" in user_agent or "iPad" in user_agent or "iOS" in user_agent:
        return "iOS"
    if "Mac OS" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown"


def extract_device(user_agent: str) -> str:
    if not user_agent:
        return "Desktop"
    if "Tablet" in user_agent or "iPad" in user_agent:
        return "Tablet"
    if "Mobile" in user_agent:
        return "Mobile"
    return "Desktop"


def get_request_ip(request: Request) -> str | None:
    """Extract best-effort client IP for session metadata."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def describe(user_agent: str | None, ip_address: str | None) -> DeviceDescriptor:
    user_agent = (user_agent or "")[:255]
    key = get_settings().effective_fingerprint_salt.encode("utf-8")
    device_fingerprint = hmac.new(
        key, f"{user_agent}|{ip_address or 'unknown'}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return DeviceDescriptor(
        user_agent=user_agent,
        ip_address=ip_address,
        browser=extract_browser(user_agent),
        os=extract_os(user_agent),
        device=extract_device(user_agent),
        fingerprint=device_fingerprint,
    )


def describe_request(request: Request) -> DeviceDescriptor:
    """Build the device descriptor for the caller of ``request``."""
    return describe(request.headers.get("user-agent"), get_request_ip(request))
