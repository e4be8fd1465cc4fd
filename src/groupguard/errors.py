from __future__ import annotations

from dataclasses import dataclass


class GuardError(Exception):
    """Base class for errors raised by groupguard."""


class ConflictError(GuardError):
    """The tenant (or session id) already holds a live session."""


class ProviderError(GuardError):
    """A Connection Provider call failed.

    Transient while a session is open (handled by reconnection), fatal when
    raised while explicitly creating a session.
    """


class PermissionDenied(GuardError):
    """Sender does not satisfy the tier of the requested command."""


class NotFoundError(GuardError):
    """Unknown session or group id."""


class InvalidTransition(GuardError):
    """A session state change that is not on the lifecycle graph."""


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str


class ValidationError(GuardError):
    """A policy patch was rejected. The stored policy is left unchanged."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(f"{i.path}: {i.message}" for i in self.issues[:5])
        super().__init__(summary or "invalid policy patch")


class ActionFailed(GuardError):
    """A moderation action could not be carried out through the provider."""

    def __init__(self, action: str, rule: str, cause: BaseException) -> None:
        self.action = action
        self.rule = rule
        self.cause = cause
        super().__init__(f"{rule}: {action} failed: {type(cause).__name__}: {cause}")
