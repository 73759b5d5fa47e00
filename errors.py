"""Exception taxonomy shared by the synchronizer stages."""

from __future__ import annotations

from typing import Optional


class NetSyncError(Exception):
    """Base class for every error a pipeline stage may raise.

    `stage` is filled in by the orchestrator when the error escapes a stage.
    """

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class ConfigValidationError(NetSyncError):
    """Raised when the YAML configuration is missing or invalid."""

    pass


class ProbeError(NetSyncError):
    """Raised when the active network identity cannot be determined."""

    pass


class NoRouteError(ProbeError):
    """Raised when the routing table has no default route."""

    pass


class NoAddressError(ProbeError):
    """Raised when the routed interface has no IPv4 address bound."""

    pass


class ConfigEditError(NetSyncError):
    """Raised when a configuration directive cannot be replaced."""

    pass


class ConfigFileMissingError(ConfigEditError, FileNotFoundError):
    """Raised when the file holding a directive does not exist."""

    pass


class TemplateError(NetSyncError):
    """Raised when the reverse-proxy template cannot be rendered."""

    pass


class IncompleteTemplateError(TemplateError):
    """Raised when a required template field is missing or empty."""

    pass


class UnsafeValueError(TemplateError):
    """Raised when a template value would break out of its directive."""

    pass


class ExternalProcessError(NetSyncError):
    """Raised when a delegated tool exits non-zero or times out."""

    def __init__(self, message: str, stage: Optional[str] = None, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message, stage=stage)
        self.exit_code = exit_code
        self.stderr = stderr


class RunLockedError(NetSyncError):
    """Raised when another synchronizer run holds the run lock."""

    pass


class NotifyError(NetSyncError):
    """Raised by notification transports. Never fatal to a run."""

    pass
