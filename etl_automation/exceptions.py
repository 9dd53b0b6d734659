"""
Error types shared across the runner and build pipeline.
"""


class EtlAutomationError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(EtlAutomationError):
    """Invalid deployment configuration."""


class SecretNotFoundError(ConfigurationError):
    """A named secret (or one of its keys) could not be resolved."""


class QueueUnavailableError(EtlAutomationError):
    """The job queue storage could not be reached."""


class CapacityUnavailableError(EtlAutomationError):
    """The capacity provider could not supply the requested vCPUs in time."""


class RegistryError(EtlAutomationError):
    """The image registry rejected a push or pull."""


class ImageNotFoundError(RegistryError):
    """An image reference is not present in the registry."""


class BuildStageError(EtlAutomationError):
    """A build pipeline stage (checkout, build, publish) failed."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
