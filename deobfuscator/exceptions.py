"""Custom exception hierarchy for the deobfuscator."""


class DeobfuscationError(Exception):
    """Base class for all deobfuscation related errors."""


class InvalidMethodBodyError(DeobfuscationError):
    """Raised when an instruction stream can't be partitioned into blocks."""


class BlockGraphError(DeobfuscationError):
    """Raised when a block graph operation is applied to incompatible blocks."""


class ListingError(DeobfuscationError):
    """Raised when a method listing can't be decoded."""


__all__ = [
    "DeobfuscationError",
    "InvalidMethodBodyError",
    "BlockGraphError",
    "ListingError",
]
