# flock/exceptions.py
"""
Error taxonomy shared by the reconciler, allocators and API layer
"""

from typing import List, Optional


class FlockError(Exception):
    """Base class for all control plane errors"""

    error_code = "FLOCK_ERROR"


class ExhaustionError(FlockError):
    """Allocator has no free address or port left in its scope"""

    error_code = "POOL_EXHAUSTED"


class ProvisioningError(FlockError):
    """A create-path command (remote or local subprocess) exited non-zero"""

    error_code = "PROVISIONING_FAILED"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
        resource: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.resource = resource

    def __str__(self) -> str:
        text = super().__str__()
        if self.resource:
            text = f"[{self.resource}] {text}"
        if self.stderr:
            text = f"{text}: {self.stderr.strip()}"
        return text


class SSHConnectionError(FlockError, ConnectionError):
    """SSH session could not be established"""

    error_code = "CONNECTION_FAILED"


class ValidationError(FlockError):
    """Declared inputs are inconsistent or not allowed"""

    error_code = "VALIDATION_ERROR"


class ConfigError(FlockError):
    """Missing or malformed connection/runtime parameters"""

    error_code = "CONFIG_ERROR"


class DeploymentError(FlockError):
    """One or more resources failed during a deployment run"""

    error_code = "DEPLOYMENT_FAILED"

    def __init__(self, failures: List[dict], report=None):
        self.failures = failures
        self.report = report
        names = ", ".join(f["resource"] for f in failures)
        super().__init__(f"{len(failures)} resource(s) failed: {names}")
