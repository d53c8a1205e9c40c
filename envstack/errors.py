"""
Error classes for envstack runs.

These error types enable retry classification at the orchestration boundary:
- TransientError: Safe to retry (the remote is still computing values)
- PermanentError: Do not retry (HTTP failures, timeouts, failed actions)

Only ApplyConflict is recovered locally, by the apply retry loop. Every other
error aborts the current run and sends it through changeset cleanup.
"""

from typing import Optional


class EnvstackError(Exception):
    """Base exception for envstack."""
    pass


class TransientError(EnvstackError):
    """
    Transient error - safe to retry.

    Raised when the remote system rejects a request only because it has not
    finished computing dependent values yet.
    """
    pass


class PermanentError(EnvstackError):
    """
    Permanent error - do not retry.

    Examples:
    - HTTP error from the remote API
    - Network failure
    - Provisioning action failed
    - Polling budget exhausted
    """
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass


class TransportError(PermanentError):
    """HTTP or network failure talking to a remote API."""

    def __init__(self, message: str, http_status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.http_status = http_status
        self.body = body


class RemoteError(TransportError):
    """Non-2xx response from the remote infrastructure API."""

    def __init__(self, method: str, url: str, http_status: int, body: str = ""):
        message = f"HTTP {http_status} on {method} {url}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message, http_status=http_status, body=body)
        self.method = method
        self.url = url


class ApplyConflict(TransientError):
    """Force-apply rejected because dependent values are still calculating."""

    def __init__(self, changeset_id: str, body: str = ""):
        super().__init__(
            f"Change set {changeset_id} not ready to apply: dependent values still calculating"
        )
        self.changeset_id = changeset_id
        self.body = body


class ApplyTimeout(PermanentError):
    """Apply-with-retry gave up while the remote was still computing."""

    def __init__(self, changeset_id: str, elapsed: float):
        super().__init__(
            f"Change set apply timeout: failed to apply {changeset_id} after "
            f"{elapsed:.0f}s - dependent values still calculating"
        )
        self.changeset_id = changeset_id
        self.elapsed = elapsed


class ConvergenceTimeout(PermanentError):
    """Actions did not reach a terminal state within the polling budget."""

    def __init__(self, changeset_id: str, elapsed: float):
        super().__init__(
            f"Action execution timeout: merge not successful for change set "
            f"{changeset_id} after {elapsed:.0f}s"
        )
        self.changeset_id = changeset_id
        self.elapsed = elapsed


class ActionFailed(PermanentError):
    """One or more provisioning actions terminated unsuccessfully."""

    def __init__(self, changeset_id: str, diagnostics: Optional[list[str]] = None):
        self.changeset_id = changeset_id
        self.diagnostics = list(diagnostics or [])
        if self.diagnostics:
            message = "; ".join(self.diagnostics)
        else:
            message = f"Actions failed for change set {changeset_id} - check logs for details"
        super().__init__(message)


class AddressTimeout(PermanentError):
    """The provisioned instance never reported a reachable address."""

    def __init__(self, component_id: str, elapsed: float):
        super().__init__(
            f"Public IP lookup timeout: instance {component_id} public IP not "
            f"available after {elapsed:.0f}s"
        )
        self.component_id = component_id
        self.elapsed = elapsed


class NotFound(PermanentError):
    """An expected component or changeset is absent."""
    pass
