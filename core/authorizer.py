"""Attune — Command Authorizer

The only gate between a model-proposed command line and the shell.

- A command line is a base command plus exactly one trailing value token
- The base must equal an allowlist entry exactly: no prefix, substring
  or pattern matching
- The allowlist is derived from a fresh preference snapshot for every check
- Startup applications use a separate allowlist of bare executable names
  and must carry the detached marker
- Decisions are returned as values; check() is the raising form
"""

from __future__ import annotations
import logging
from typing import Iterable, Set, Tuple

from models.models import (
    ActionType, AttuneError, AuthorizationDecision, Environment,
    PreferenceSet, RejectionKind, sanitize_log,
)

logger = logging.getLogger("attune.authorizer")

DETACHED_MARKER = "&"


class CommandRejected(AttuneError):
    def __init__(self, decision: AuthorizationDecision):
        super().__init__(decision.reason)
        self.decision = decision


class MalformedCommand(CommandRejected):
    """The command line does not split into base command + one value."""


class UnauthorizedCommand(CommandRejected):
    """The base command is not on the allowlist."""


def split_command(command_line: str) -> Tuple[str, str]:
    """Split into (base command, trailing value). Raises MalformedCommand."""
    parts = command_line.split() if isinstance(command_line, str) else []
    if len(parts) < 2:
        raise MalformedCommand(_deny(
            RejectionKind.MALFORMED,
            "Invalid command format: must have base command + 1 argument",
        ))
    return " ".join(parts[:-1]).strip(), parts[-1]


def allowlist_for(preferences: PreferenceSet, environment: Environment) -> Set[str]:
    return preferences.command_allowlist(environment)


def _deny(kind: RejectionKind, reason: str, base: str = "", value: str = "") -> AuthorizationDecision:
    return AuthorizationDecision(
        action=ActionType.DENY, reason=reason, base_command=base, value=value, rejection=kind,
    )


class CommandAuthorizer:
    def __init__(self, startup_apps: Iterable[str] = ()):
        self._startup_apps: Tuple[str, ...] = tuple(
            a.strip() for a in startup_apps if a and a.strip()
        )
        logger.info(f"CommandAuthorizer initialized: startup_apps={list(self._startup_apps)}")

    @property
    def startup_apps(self) -> Tuple[str, ...]:
        return self._startup_apps

    def authorize(self, command_line: str, allowlist: Iterable[str]) -> AuthorizationDecision:
        try:
            base, value = split_command(command_line)
        except MalformedCommand as e:
            logger.warning(f"Malformed command rejected: {sanitize_log(str(command_line))!r}")
            return e.decision

        if base not in set(allowlist):
            logger.warning(f"Unauthorized command base rejected: {sanitize_log(base)!r}")
            return _deny(
                RejectionKind.UNAUTHORIZED,
                f"Unrecognized/unauthorized command base: '{base}'",
                base, value,
            )

        return AuthorizationDecision(
            action=ActionType.ALLOW,
            reason="Base command is on the allowlist",
            base_command=base,
            value=value,
        )

    def check(self, command_line: str, allowlist: Iterable[str]) -> AuthorizationDecision:
        """Like authorize(), but raises MalformedCommand / UnauthorizedCommand."""
        decision = self.authorize(command_line, allowlist)
        if decision.rejection is RejectionKind.MALFORMED:
            raise MalformedCommand(decision)
        if decision.rejection is RejectionKind.UNAUTHORIZED:
            raise UnauthorizedCommand(decision)
        return decision

    def authorize_startup_app(self, command_line: str) -> AuthorizationDecision:
        parts = command_line.split() if isinstance(command_line, str) else []
        if len(parts) < 2 or parts[-1] != DETACHED_MARKER:
            logger.warning(f"Startup app command without detached marker: "
                           f"{sanitize_log(str(command_line))!r}")
            return _deny(
                RejectionKind.MALFORMED,
                f"Startup app command must end with ' {DETACHED_MARKER}'",
            )
        if len(parts) != 2:
            return _deny(
                RejectionKind.MALFORMED,
                "Startup app command must be a bare executable name",
                " ".join(parts[:-1]),
            )

        app = parts[0]
        if app not in self.startup_apps:
            logger.warning(f"Unauthorized startup app rejected: {sanitize_log(app)!r}")
            return _deny(
                RejectionKind.UNAUTHORIZED,
                f"Unrecognized/unauthorized startup app: '{app}'",
                app,
            )
        return AuthorizationDecision(
            action=ActionType.ALLOW,
            reason="Startup app is on the allowlist",
            base_command=app,
        )
