# stack_engine/core/errors.py

from typing import Iterable, List


# -----------------------------
# Base Errors
# -----------------------------

class StackError(Exception):
    """Base class for all stack engine errors."""
    pass


# -----------------------------
# Fatal Errors (abort apply before any service is touched)
# -----------------------------

class SpecValidationError(StackError):
    """Deployment spec is malformed. Carries every violation found."""

    def __init__(self, violations: Iterable[str]):
        self.violations: List[str] = list(violations)
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(
            f"Deployment spec has {len(self.violations)} violation(s):\n{lines}"
        )


class CycleError(StackError):
    """Service dependency graph contains a cycle."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.cycle)
        )


# -----------------------------
# Scoped Errors (recorded per service, apply continues)
# -----------------------------

class PreconditionError(StackError):
    """Certificate or DNS precondition not satisfied for a domain."""
    pass


class CertificateError(PreconditionError):
    """Certificate could not be issued, renewed or read."""
    pass


class DnsLookupError(PreconditionError):
    """A DNS query could not be answered (resolver missing, timeout, SERVFAIL)."""
    pass


class DriverError(StackError):
    """Service driver reported an Apply/Verify/Probe failure."""
    pass


class OperationTimeout(StackError, TimeoutError):
    """A bounded call exceeded its deadline."""
    pass


# -----------------------------
# State / Lookup Errors
# -----------------------------

class InvalidStateTransition(StackError):
    """Illegal service phase transition attempted."""
    pass


class ServiceNotFound(StackError):
    pass


class ReportNotFound(StackError):
    pass
