"""Exception hierarchy shared by the region pipeline and the API layer."""
from enum import Enum


class PIISealError(Exception):
    """Base class for every error raised by piiseal."""


class DetectionError(PIISealError):
    """An external detector failed. Not retried here."""


class SkipReason(str, Enum):
    OUT_OF_BOUNDS = "out_of_bounds"
    DEGENERATE = "degenerate"


class RegionSkipped(PIISealError):
    """A rectangle has no usable intersection with the image."""

    def __init__(self, reason: SkipReason, detail: str = ""):
        self.reason = reason
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class RestoreError(PIISealError):
    """A pixel block does not fit the rectangle it is restored into."""


class CryptoError(PIISealError):
    """Base class for cryptographic failures. Always fails closed."""


class AuthenticationError(CryptoError):
    """AEAD open failed: wrong key or tampered ciphertext, nonce or tag."""


class UnwrapError(CryptoError):
    """A wrapped image key could not be recovered with the given private key."""


class KeyDerivationError(CryptoError):
    pass


class KeyMismatchError(CryptoError):
    """The image key does not belong to the package being opened."""


class KeyNotFoundError(CryptoError):
    pass


class PackageFormatError(PIISealError):
    """A serialized package or envelope is malformed or incomplete."""
