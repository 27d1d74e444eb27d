from __future__ import annotations


class Error(Exception):
    pass


class HiveIOError(Error):
    pass


class HeaderError(Error):
    pass


class BadSignatureError(HeaderError):
    pass


class BadChecksumError(HeaderError):
    pass


class CellError(Error):
    def __init__(self, message: str, offset: int | None = None):
        super().__init__(message)
        self.offset = offset


class CellSizeError(CellError):
    pass


class TruncatedReadError(CellError):
    pass


class FreeCellError(CellError):
    pass


class DecodeError(Error):
    pass


class InvalidSignatureError(DecodeError):
    pass


class UnknownIndexKindError(DecodeError):
    pass


class UnknownSubentryKindError(DecodeError):
    pass


class InvalidCountError(DecodeError):
    pass


class NameLengthError(DecodeError):
    pass


class KeyDepthError(DecodeError):
    pass


class KeyCycleError(DecodeError):
    pass


class RootError(Error):
    pass


class RootNotFoundError(RootError):
    pass


class RegistryKeyNotFoundError(Error):
    pass


class StructuralAnomaly(Warning):
    """Inconsistency in the hive that does not stop the walk.

    Anomalies are reported to the hive, never raised by it.
    """

    def __init__(self, message: str, offset: int | None = None):
        super().__init__(message)
        self.offset = offset


class SubkeyCountMismatch(StructuralAnomaly):
    def __init__(self, message: str, offset: int | None, expected: int, actual: int):
        super().__init__(message, offset)
        self.expected = expected
        self.actual = actual


class CorruptSubtree(StructuralAnomaly):
    def __init__(self, message: str, offset: int | None, error: Error):
        super().__init__(message, offset)
        self.error = error
