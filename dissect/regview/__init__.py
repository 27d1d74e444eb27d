from dissect.regview.exceptions import (
    BadChecksumError,
    BadSignatureError,
    CellError,
    DecodeError,
    Error,
    HeaderError,
    RegistryKeyNotFoundError,
    RootError,
    StructuralAnomaly,
)
from dissect.regview.regview import RegistryHive, locate_root, read_cell, resolve, validate_header


__all__ = [
    "RegistryHive",
    "locate_root",
    "read_cell",
    "resolve",
    "validate_header",
    "Error",
    "BadChecksumError",
    "BadSignatureError",
    "CellError",
    "DecodeError",
    "HeaderError",
    "RegistryKeyNotFoundError",
    "RootError",
    "StructuralAnomaly",
]
