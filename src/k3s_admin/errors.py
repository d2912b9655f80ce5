"""Exception hierarchy for k3s cluster administration.

All orchestration failures derive from K3sAdminError so the CLI can catch a
single type and map it to a non-zero exit code:

    K3sAdminError
    ├── RemoteConnectionError      host unreachable or SSH failure
    │   └── RemoteTimeoutError     command exceeded its timeout
    ├── PreconditionError          refused to start a step
    │   ├── QuorumError            would leave no live control-plane node
    │   ├── ValidationFailedError  blocking health check failed
    │   └── ArtifactNotFoundError  snapshot, backup or etcd snapshot missing
    ├── CommandFailedError         remote command or API call failed
    │   └── DrainTimeoutError      kubectl drain hit its timeout
    ├── VerificationError          command succeeded but state disagrees
    ├── MissingMetadataError       artifact has no linked etcd snapshot
    └── ConfigError                invalid configuration
"""

from typing import Optional


class K3sAdminError(Exception):
    """Base exception for all cluster administration errors."""


class RemoteConnectionError(K3sAdminError):
    """Remote host could not be reached."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f"{host}: {message}")


class RemoteTimeoutError(RemoteConnectionError):
    """Remote command did not finish within its timeout."""


class PreconditionError(K3sAdminError):
    """A precondition for a mutating step does not hold."""


class QuorumError(PreconditionError):
    """Taking the node down would leave no live control-plane node."""


class ValidationFailedError(PreconditionError):
    """Cluster validation reported blocking errors."""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class ArtifactNotFoundError(PreconditionError):
    """Requested snapshot, backup or etcd snapshot does not exist."""


class CommandFailedError(K3sAdminError):
    """Remote command returned non-zero or an API call was rejected."""

    def __init__(self, message: str, command: str = "", exit_code: Optional[int] = None, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class DrainTimeoutError(CommandFailedError):
    """Drain did not finish within the configured timeout."""


class VerificationError(K3sAdminError):
    """Command reported success but the post-condition check disagrees."""


class MissingMetadataError(K3sAdminError):
    """Artifact carries no linked etcd snapshot name."""


class ConfigError(K3sAdminError):
    """Configuration file is missing or invalid."""
