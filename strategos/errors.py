class StrategosError(Exception):
    """Base class for Strategos-specific errors."""


# Opening / addressing
class OpenError(StrategosError):
    """Archive header is unreadable or malformed."""


class UnknownFormatError(OpenError):
    pass


class NotFoundError(StrategosError):
    """Path or identifier is absent from the archive."""


class UnsupportedOperation(StrategosError):
    """Capability is not implemented by the resolved format."""


class EncryptedArchiveRequiresPassword(StrategosError):
    pass


# Key material
class InvalidEncoding(StrategosError):
    pass


class InvalidKeyLength(StrategosError):
    pass


# Integrity / query
class VerificationFailed(StrategosError):
    pass


class QueryError(StrategosError):
    pass
