"""
Exception hierarchy for the Face-to-Phone security core.

Every error carries a ``guidance`` string that can be shown to the user
instead of the raw error text.
"""
from typing import Optional


class FaceToPhoneError(Exception):
    """Base class for all errors raised by this package."""

    default_guidance = "Something went wrong - please retry or contact support"

    def __init__(self, message: str, guidance: Optional[str] = None):
        super().__init__(message)
        self.guidance = guidance or self.default_guidance


class ValidationError(FaceToPhoneError, ValueError):
    """Malformed input, e.g. a non-positive amount or an empty recipient."""

    default_guidance = "Please check the transaction details and try again"


class StorageError(FaceToPhoneError):
    """The local store could not complete an operation."""

    default_guidance = "Local storage is unavailable - please retry shortly"


class EncryptionError(StorageError):
    """A value could not be encrypted; nothing was written."""

    default_guidance = "Your data could not be secured - nothing was saved, please retry"


class DecryptionError(StorageError):
    """A stored value failed authenticated decryption."""

    default_guidance = "Stored data could not be verified - contact support if this persists"


class NotFoundError(FaceToPhoneError, LookupError):
    """A biometric template, user or record does not exist."""

    default_guidance = "Enrollment required - please register your face and voice first"


class CapabilityUnavailableError(FaceToPhoneError):
    """The platform authenticator is missing on this device."""

    default_guidance = "Device authenticator unavailable - using simulated verification"
