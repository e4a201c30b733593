"""Error taxonomy.

Every error carries enough context (service, version, host, constraint) for the
operator to act on it.
"""
from __future__ import annotations


class FleetError(Exception):
    """Base class for all orchestrator errors."""

    def __init__(self, message: str, service: str | None = None, version: int | None = None, host: str | None = None):
        super().__init__(message)
        self.service = service
        self.version = version
        self.host = host

    def context(self) -> dict[str, object]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "service": self.service,
            "version": self.version,
            "host": self.host,
        }


class DescriptorError(FleetError):
    """Malformed or inconsistent stack descriptor."""


class Unschedulable(FleetError):
    """No eligible host remains for a required replica."""

    def __init__(self, message: str, service: str, version: int | None, ordinal: int, reason: str):
        super().__init__(message, service=service, version=version)
        self.ordinal = ordinal
        self.reason = reason

    def context(self) -> dict[str, object]:
        ctx = super().context()
        ctx.update(ordinal=self.ordinal, reason=self.reason)
        return ctx


class HealthCheckFailed(FleetError):
    """A replica stayed unhealthy after exhausting its restart attempts."""

    def __init__(self, message: str, service: str, version: int | None, host: str | None, attempts: int):
        super().__init__(message, service=service, version=version, host=host)
        self.attempts = attempts

    def context(self) -> dict[str, object]:
        ctx = super().context()
        ctx["attempts"] = self.attempts
        return ctx


class RolloutFailed(FleetError):
    """A rollout batch failed; the configured failure_action applies."""

    def __init__(self, message: str, service: str, version: int | None, cause: FleetError | None = None):
        super().__init__(message, service=service, version=version, host=cause.host if cause else None)
        self.cause = cause

    def context(self) -> dict[str, object]:
        ctx = super().context()
        ctx["cause"] = self.cause.context() if self.cause else None
        return ctx


class QuorumViolation(FleetError):
    """A rollout step would drop a quorum group below its threshold. Never executed."""

    def __init__(self, message: str, service: str, group: str, healthy: int, quorum: int, requested: int):
        super().__init__(message, service=service)
        self.group = group
        self.healthy = healthy
        self.quorum = quorum
        self.requested = requested


class ChallengeFailed(FleetError):
    """Certificate issuance or renewal failed for a domain."""

    def __init__(self, message: str, domain: str, last_known_good=None):
        super().__init__(message)
        self.domain = domain
        # Certificate still served for the domain, if any.
        self.last_known_good = last_known_good

    def context(self) -> dict[str, object]:
        ctx = super().context()
        ctx["domain"] = self.domain
        ctx["serving_last_known_good"] = self.last_known_good is not None
        return ctx


class InvalidRolloutTransition(FleetError):
    """Illegal rollout state transition attempted."""
