from __future__ import annotations


class UserExecError(Exception):
    """Base class for every error raised by user_exec_table."""


class MissingConstraintError(UserExecError):
    pass


class WorkspaceError(UserExecError):
    pass


class ConfigError(UserExecError):
    pass


class UnsupportedPlatformError(UserExecError):
    pass


class PerUserError(UserExecError):
    """Failure scoped to one username; table generation continues without it."""

    def __init__(self, message: str, *, username: str | None = None) -> None:
        super().__init__(message)
        self.username = username


class UserLookupError(PerUserError):
    pass


class SpawnError(PerUserError):
    pass


class ExecTimeoutError(PerUserError):
    pass


class ExecCancelledError(PerUserError):
    pass


class ProcessFailedError(PerUserError):
    def __init__(
        self,
        message: str,
        *,
        username: str | None = None,
        exit_code: int,
        stderr: str,
    ) -> None:
        super().__init__(message, username=username)
        self.exit_code = exit_code
        self.stderr = stderr


class DecodeError(PerUserError):
    pass
