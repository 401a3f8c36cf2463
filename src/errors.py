"""Error taxonomy for the bootstrap-and-pivot workflow.

Every component raises one of these; only the orchestrator decides whether a
failure ends the run. The category string is stable and is what the CLI, the
run state file and the report record.
"""

from typing import Optional


class GokpError(Exception):
    """Base exception for workflow errors."""

    category = 'error'
    transient = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.category}: {self.message}"


class ConfigError(GokpError):
    """Invalid user input or configuration file."""

    category = 'config'


class ResourceError(GokpError):
    """Local filesystem or workspace failure."""

    category = 'resource'


class InfrastructureError(GokpError):
    """Local bootstrap runtime or provisioning engine unavailable."""

    category = 'infrastructure'


class ProvisioningFailedError(InfrastructureError):
    """Target cluster reported a terminal failure and will never become ready."""

    category = 'provisioning-failed'


class AuthError(GokpError):
    """Credentials rejected by a remote API."""

    category = 'auth'


class ConflictError(GokpError):
    """Naming collision (remote repository or local archive)."""

    category = 'conflict'


class RenderError(GokpError):
    """Overlay directory could not be rendered."""

    category = 'render'


class ApplyError(GokpError):
    """A single manifest document failed to apply.

    Attributes:
        document: Path of the document that failed
        cause: Error output from the API server / kubectl
    """

    category = 'apply'

    def __init__(self, document: str, cause: str):
        self.document = document
        self.cause = cause
        super().__init__(f"{document}: {cause}")


class TransportError(GokpError):
    """Network or push rejection."""

    category = 'transport'
    transient = True


class ReadinessTimeoutError(GokpError):
    """A bounded wait expired while the resource was still progressing."""

    category = 'timeout'
    transient = True


class InconsistencyError(GokpError):
    """Pivot confirmed on the destination but source cleanup failed.

    Requires manual reconciliation; never retried automatically.
    """

    category = 'inconsistency'

    def __init__(self, message: str, remaining: Optional[list[str]] = None):
        self.remaining = remaining or []
        super().__init__(message)


class CancelledError(GokpError):
    """The run was interrupted between states or during a wait."""

    category = 'cancelled'
