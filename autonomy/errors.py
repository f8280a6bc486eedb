"""Error taxonomy for the autonomy runtime.

Most conditions here are *expected* business states and travel as values
(``PolicyDecision``, ``SendResult.kind``).  Only the two exception classes
are ever raised, and both are caught at the job-runner boundary.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable codes for the outcomes callers are expected to handle."""

    POLICY_DENIED = "policy_denied"
    TOOL_NOT_REGISTERED = "tool_not_registered"
    TRANSPORT_FAILURE = "transport_failure"
    RECIPIENT_OPTED_OUT = "opted_out"
    QUIET_HOURS_DEFERRAL = "quiet_hours_deferral"
    RATE_LIMITED = "rate_limited"
    STALE_CLAIM_TIMEOUT = "stale_claim_timeout"
    FEATURE_DISABLED = "feature_disabled"
    OUTBOUND_DISABLED = "outbound_disabled"


class ToolNotRegisteredError(LookupError):
    """Raised when a job names a tool that is not on the allowlist."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"No executor registered: {tool_name}")


class TransportError(Exception):
    """Raised by the Twilio client when a send fails at the HTTP level."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)
