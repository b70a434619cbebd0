from typing import Any, List, Optional


class Ax4Error(Exception):
    """Base class for ax4archive-specific errors."""


# Passphrase handling
class MissingPassphrase(Ax4Error):
    def __init__(self, message: str = "A passphrase is required"):
        super().__init__(message)


class WeakPassphrase(Ax4Error):
    pass


# Envelope / crypto
class DecryptionAuthFailure(Ax4Error):
    """Wrong passphrase or corrupted archive; the two are deliberately indistinguishable."""

    def __init__(self, message: str = "incorrect passphrase or corrupted archive"):
        super().__init__(message)


class EnvelopeFormatError(Ax4Error):
    pass


# Container / document
class CorruptContainer(Ax4Error):
    pass


class SchemaValidationFailure(Ax4Error):
    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


# Photos
class PhotoMissing(Ax4Error):
    def __init__(self, photo_id: str, message: Optional[str] = None):
        super().__init__(message or f"Photo not found: {photo_id}")
        self.photo_id = photo_id
