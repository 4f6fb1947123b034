#!/usr/bin/env python3
"""
POV Router Error Taxonomy
Version: 1.0.0

All routing failures are recoverable and surface as a bool outcome plus a log line
at the switcher / topology boundary. Only ConfigError is fatal, and only at startup.
"""

from typing import Optional


class RouterError(Exception):
    """Base class for all POV Router errors."""


class ConfigError(RouterError):
    """Configuration file or value is unusable."""


class SessionNotReady(RouterError):
    """OBS session is not connected/identified. Retryable: the switch is skipped."""


class RemoteCallError(RouterError):
    """OBS rejected a request or the connection dropped while it was in flight."""

    def __init__(self, request_type: str, message: str = "", code: Optional[int] = None):
        self.request_type = request_type
        self.code = code
        detail = f"{request_type} failed"
        if code is not None:
            detail += f" (code {code})"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class RemoteCallTimeout(RemoteCallError):
    """OBS did not answer a request within the configured timeout."""

    def __init__(self, request_type: str, timeout: float):
        self.timeout = timeout
        super().__init__(request_type, f"no response after {timeout:.1f}s")


class TopologyFetchFailed(RouterError):
    """Scene item listing failed; callers degrade to an empty topology."""


class TargetNotFound(RouterError):
    """No scene item carries the requested source name."""

    def __init__(self, source_name: str, scene_name: str):
        self.source_name = source_name
        self.scene_name = scene_name
        super().__init__(f'source "{source_name}" not found in scene "{scene_name}"')


class ToggleFailed(RouterError):
    """A single SetSceneItemEnabled call failed."""
