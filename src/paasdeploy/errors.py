"""Domain errors for paasdeploy."""


class DeployError(RuntimeError):
    """Raised when a deployment or rollback cannot continue safely."""


class ConfigurationError(DeployError):
    """Tenant selection, runtime topology or rendered output is unusable."""


class ProvisionError(DeployError):
    """A declared network could not be created."""


class GroupStartError(DeployError):
    """The container runtime rejected a group start command."""

    def __init__(self, message: str, group: str):
        super().__init__(message)
        self.group = group


class DeadlineExceeded(DeployError):
    """The attempt-level time budget ran out."""


class LockHeldError(DeployError):
    """Another deployment or rollback holds the configuration lock."""


class RollbackError(DeployError):
    """Raised when a rollback cannot complete.

    ``degraded`` is set once the rollback has started changing the running
    deployment; the host is then in an unknown state.
    """

    def __init__(self, message: str, degraded: bool = False):
        super().__init__(message)
        self.degraded = degraded
