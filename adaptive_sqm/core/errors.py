"""Error taxonomy for the shaping pipeline."""


class SqmError(Exception):
    """Base class for controller errors."""


class MeasurementUnavailable(SqmError):
    """A speed test or ping did not produce a usable result."""


class RemoteUnreachable(SqmError):
    """The remote command channel could not reach the gateway (retryable)."""


class DeploymentRejected(SqmError):
    """The gateway ran the command and reported a failure."""

    def __init__(self, message: str, exit_code: int | None = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class DeploymentRefused(SqmError):
    """A deploy was requested before any measurement or baseline existed."""


class InvalidShapingParameter(SqmError, ValueError):
    """A value bound for the shaping template failed validation."""


class LinkNotFound(SqmError, KeyError):
    """No WAN link with the requested id."""


class LinkConfigurationError(SqmError, ValueError):
    """A WAN link definition is inconsistent."""
