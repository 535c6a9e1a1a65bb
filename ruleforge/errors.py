"""
Error Taxonomy
==============

Exceptions raised by the rule evolution engine.

Transient capability failures (CapabilityError and subclasses) are retried on
the next scheduled pass. Permanent item failures mark a single session as
unanalyzable. Invariant violations are always raised to the caller.
"""

from typing import Any, Optional


class RuleForgeError(Exception):
    """Base exception for the engine."""

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for structured reporting."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(RuleForgeError):
    """Configuration value is missing or out of range."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("CONFIG_ERROR", message, details)


# =============================================================================
# Transient capability failures
# =============================================================================

class CapabilityError(RuleForgeError):
    """External scoring/review capability failed (retryable)."""

    def __init__(self, message: str = "Capability call failed", details: Optional[dict[str, Any]] = None):
        super().__init__("CAPABILITY_ERROR", message, details)


class CapabilityTimeout(CapabilityError):
    """External capability did not answer within the configured timeout."""

    def __init__(self, timeout_seconds: float, details: Optional[dict[str, Any]] = None):
        super().__init__(f"Capability call timed out after {timeout_seconds}s", details)
        self.code = "CAPABILITY_TIMEOUT"
        self.timeout_seconds = timeout_seconds


class InvalidCapabilityResponse(CapabilityError):
    """Capability answered with a payload that fails validation."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "INVALID_CAPABILITY_RESPONSE"


# =============================================================================
# Permanent item failures
# =============================================================================

class MalformedSessionError(RuleForgeError):
    """Session cannot be analyzed no matter how often it is retried."""

    def __init__(self, session_id: str, reason: str):
        super().__init__("MALFORMED_SESSION", f"Session {session_id} is malformed: {reason}",
                         {"session_id": session_id})
        self.session_id = session_id


class MalformedImportError(RuleForgeError):
    """An item in a session import payload cannot be ingested."""

    def __init__(self, index: int, reason: str):
        super().__init__("MALFORMED_IMPORT", f"Import item {index} is malformed: {reason}",
                         {"index": index})
        self.index = index


class NotFoundError(RuleForgeError):
    """Requested entity does not exist."""

    def __init__(self, entity: str, key: Any):
        super().__init__("NOT_FOUND", f"{entity} {key} not found", {"entity": entity, "key": key})


# =============================================================================
# Invariant violations
# =============================================================================

class InvariantViolation(RuleForgeError):
    """A caller attempted a write it does not own."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("INVARIANT_VIOLATION", message, details)


class InvalidTransitionError(InvariantViolation):
    """Requested rule status change is not allowed by the lifecycle."""

    def __init__(self, rule_id: int, from_status: str, to_status: str):
        super().__init__(
            f"Rule {rule_id}: transition {from_status} -> {to_status} is not allowed",
            {"rule_id": rule_id, "from": from_status, "to": to_status},
        )
        self.code = "INVALID_TRANSITION"
