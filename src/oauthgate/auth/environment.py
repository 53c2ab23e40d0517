"""Headless environment detection for choosing the device flow."""

import os
import sys
from typing import Mapping

from oauthgate.settings import DeviceFlowSettings

_TRUTHY = "true"


def is_headless_environment(
    environ: Mapping[str, str] | None = None, platform: str | None = None
) -> bool:
    """Check whether no browser is likely available.

    Containers, CI runners, Unix sessions without DISPLAY and terminal-only
    sessions all count as headless.
    """
    env = os.environ if environ is None else environ
    platform = platform or sys.platform

    # Containers
    if any(
        env.get(name, "").lower() == _TRUTHY
        for name in ("CONTAINER", "IS_DOCKER", "DOCKER_CONTAINER")
    ):
        return True

    # CI/CD
    if any(env.get(name, "").lower() == _TRUTHY for name in ("CI", "CONTINUOUS_INTEGRATION")):
        return True

    # No display server (Linux/Unix)
    if not platform.startswith("win") and platform != "darwin" and not env.get("DISPLAY"):
        return True

    # Terminal without a desktop session
    if env.get("TERM") and not env.get("DESKTOP_SESSION") and platform != "darwin":
        return True

    return False


def should_use_device_flow(
    config: DeviceFlowSettings,
    environ: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> bool:
    """Decide between device and browser flow, honoring force overrides."""
    if config.force_device_flow:
        return True
    if config.force_browser_flow:
        return False
    return is_headless_environment(environ, platform)
