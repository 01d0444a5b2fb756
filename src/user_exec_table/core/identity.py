"""Identity lookup and session impersonation capabilities.

Both are platform specific. The orchestrator only sees the narrow
`IdentityResolver` / `SessionLauncher` protocols from `types`, so another
platform can supply its own pair without touching table generation.
"""

from __future__ import annotations

import platform

from .errors import UnsupportedPlatformError, UserLookupError
from .types import SessionLauncher, UserIdentity


class PasswdIdentityResolver:
    """Resolve usernames through the system user database. Never cached."""

    def resolve(self, username: str) -> UserIdentity:
        import pwd

        try:
            entry = pwd.getpwnam(username)
        except KeyError as exc:
            raise UserLookupError(
                f"looking up username {username}: unknown user", username=username
            ) from exc
        return UserIdentity(username=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid)


class LaunchctlSession:
    """Run inside the user's GUI session (keychain, preferences) on macOS."""

    def __init__(self, launchctl: str = "launchctl") -> None:
        self.launchctl = launchctl

    def wrap(self, identity: UserIdentity, argv: list[str]) -> list[str]:
        return [self.launchctl, "asuser", str(identity.uid), *argv]


class RunuserSession:
    def __init__(self, runuser: str = "runuser") -> None:
        self.runuser = runuser

    def wrap(self, identity: UserIdentity, argv: list[str]) -> list[str]:
        return [self.runuser, "-u", identity.username, "--", *argv]


def default_session_launcher(system: str | None = None) -> SessionLauncher:
    name = system if system is not None else platform.system()
    if name == "Darwin":
        return LaunchctlSession()
    if name == "Linux":
        return RunuserSession()
    raise UnsupportedPlatformError(f"No session launcher for platform {name!r}")
