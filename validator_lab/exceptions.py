"""Exceptions related to validator-lab."""

__all__ = [
    "ValidatorLabException",
    "ConfigException",
    "CommandException",
    "BuildException",
    "GenesisException",
    "ReadinessTimeoutError",
    "ResourceApplyError",
    "ResourceConflictError",
    "OrdinalCollisionError",
    "FundingError",
    "ClientLaunchError",
]


class ValidatorLabException(Exception):
    """Generic base exception used for this library."""


class ConfigException(ValidatorLabException):
    """Raised when flags or values are invalid or contradict each other."""


class CommandException(ValidatorLabException):
    """Raised when there is a failure running a subcommand."""


class BuildException(CommandException):
    """Raised when compiling, fetching, or pushing a build artifact fails."""


class GenesisException(CommandException):
    """Raised when the genesis or identity material cannot be produced."""


class ReadinessTimeoutError(ValidatorLabException):
    """Raised when a readiness or convergence poll is exhausted."""

    def __init__(self, resource: str, attempts: int, detail: str | None = None) -> None:
        message = f"Timed out waiting for {resource} after {attempts} attempts"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.resource = resource
        self.attempts = attempts


class ResourceApplyError(ValidatorLabException):
    """Raised when a cluster API call fails after all retries."""

    def __init__(self, resource: str, message: str | None) -> None:
        super().__init__(f"Resource {resource} failed: {message or 'Unknown error'}")
        self.resource = resource
        self.message = message


class ResourceConflictError(ResourceApplyError):
    """Raised when a create-only call finds the name already taken."""


class OrdinalCollisionError(ResourceApplyError):
    """Raised when an allocated node name is owned by a different build."""


class FundingError(ValidatorLabException):
    """Raised when client accounts could not be funded from the faucet."""


class ClientLaunchError(ValidatorLabException):
    """Raised when a single client could not be scheduled."""

    def __init__(self, client_name: str, message: str) -> None:
        super().__init__(f"Client {client_name} failed to launch: {message}")
        self.client_name = client_name
