"""Device identity and classification."""

from __future__ import annotations

import platform
import re
import secrets
import string
from typing import Optional, Protocol

from stronghold_sync import types

_TABLET_PATTERN = re.compile(r"tablet|ipad|playbook|silk", re.IGNORECASE)
_MOBILE_PATTERN = re.compile(
    r"mobile|iphone|ipod|android|blackberry|opera|mini|windows\sce|palm|smartphone|iemobile",
    re.IGNORECASE,
)
_ID_ALPHABET = string.ascii_lowercase + string.digits


class DeviceInfoProvider(Protocol):
    def display_name(self) -> str:
        ...

    def device_class(self) -> types.DeviceClass:
        ...

    def platform(self) -> str:
        ...


def classify_user_agent(user_agent: str) -> types.DeviceClass:
    if _TABLET_PATTERN.search(user_agent):
        return types.DeviceClass.TABLET
    if _MOBILE_PATTERN.search(user_agent):
        return types.DeviceClass.MOBILE
    return types.DeviceClass.DESKTOP


def browser_name(user_agent: str) -> Optional[str]:
    # Chrome user agents also mention Safari, so order matters.
    for token, name in (("Chrome", "Chrome Browser"), ("Firefox", "Firefox Browser"), ("Safari", "Safari Browser")):
        if token in user_agent:
            return name
    return None


def generate_device_id(now: float) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"device-{int(now * 1000)}-{suffix}"


class SystemDeviceInfo:
    """Describe the current machine, optionally through a browser-style user agent."""

    def __init__(self, *, user_agent: Optional[str] = None, display_name: Optional[str] = None) -> None:
        self._user_agent = user_agent or ""
        self._display_name = display_name

    def display_name(self) -> str:
        if self._display_name:
            return self._display_name
        if self._user_agent:
            return browser_name(self._user_agent) or "Unknown Browser"
        node = platform.node()
        return node or "Unknown Device"

    def device_class(self) -> types.DeviceClass:
        if self._user_agent:
            return classify_user_agent(self._user_agent)
        return types.DeviceClass.DESKTOP

    def platform(self) -> str:
        return platform.platform(terse=True) or platform.system() or "unknown"


__all__ = [
    "DeviceInfoProvider",
    "SystemDeviceInfo",
    "browser_name",
    "classify_user_agent",
    "generate_device_id",
]
