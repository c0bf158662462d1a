from __future__ import annotations


class TracklogError(RuntimeError):
    code = "error"


class ConfigError(TracklogError):
    code = "config_error"


class WriteError(TracklogError):
    """The store rejected a write (connection, permission, constraint)."""

    code = "write_error"


class ValidationError(TracklogError):
    code = "validation_error"


class InvalidInterval(ValidationError):
    code = "invalid_interval"


class MissingTarget(ValidationError):
    code = "missing_target"


class MarkerInconsistency(TracklogError):
    code = "marker_inconsistency"


class TimerStateError(TracklogError):
    code = "timer_state"


class EntryNotFound(TracklogError):
    code = "not_found"


class PermissionDenied(TracklogError):
    code = "forbidden"
