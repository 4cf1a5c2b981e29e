"""Error types for the volume scaler controller."""


class VolumeScalerError(Exception):
    """Base class for volume scaler errors."""
    def __init__(self, message, code='InternalError'):
        super().__init__(message)
        self.message = message
        self.code = code


class InvalidPolicyValue(VolumeScalerError):
    """A policy or claim field could not be parsed."""
    pass


class InvalidSize(InvalidPolicyValue):
    """Size string is empty, non-numeric or carries an unknown unit."""
    def __init__(self, value, reason="unrecognized size"):
        super().__init__(f"invalid size '{value}': {reason}", "InvalidSize")
        self.value = value


class InvalidPercentage(InvalidPolicyValue):
    """Percentage string does not parse as a number."""
    def __init__(self, value):
        super().__init__(f"invalid percentage '{value}'", "InvalidPercentage")
        self.value = value


class InvalidDuration(InvalidPolicyValue):
    """Cooldown period does not parse as a duration."""
    def __init__(self, value):
        super().__init__(f"invalid duration '{value}'", "InvalidDuration")
        self.value = value


class InvalidTimestamp(InvalidPolicyValue):
    """Stored scaledAt timestamp is not RFC 3339."""
    def __init__(self, value):
        super().__init__(f"cannot parse scaledAt '{value}'", "InvalidTimestamp")
        self.value = value


class MeasurementUnavailable(VolumeScalerError):
    """Usage could not be measured for a mount path."""
    def __init__(self, message):
        super().__init__(message, "MeasurementUnavailable")


class ExternalCallFailed(VolumeScalerError):
    """A call to the Kubernetes API failed."""
    def __init__(self, operation, error):
        super().__init__(f"{operation} failed: {error}", "ExternalCallFailed")
        self.operation = operation
        self.status = getattr(error, "status", None)


class DiscoveryFailed(VolumeScalerError):
    """Local mount enumeration failed."""
    def __init__(self, message):
        super().__init__(message, "DiscoveryFailed")
