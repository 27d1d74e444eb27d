from __future__ import annotations

import logging
import os
import struct
from functools import cached_property
from typing import TYPE_CHECKING, BinaryIO

from dissect.util.ts import wintimestamp

from dissect.regview.c_regview import (
    CELL_SIZE_LENGTH,
    CHECKSUM_OFFSET,
    HBASE_BLOCK_SIZE,
    HBIN_SIGNATURE,
    HCELL_NIL,
    KEY,
    MAX_CELL_SIZE,
    MAX_KEY_DEPTH,
    REGF_SIGNATURE,
    c_regview,
)
from dissect.regview.exceptions import (
    BadChecksumError,
    BadSignatureError,
    CellError,
    CellSizeError,
    CorruptSubtree,
    DecodeError,
    FreeCellError,
    HeaderError,
    HiveIOError,
    InvalidCountError,
    InvalidSignatureError,
    KeyCycleError,
    KeyDepthError,
    NameLengthError,
    RegistryKeyNotFoundError,
    RootNotFoundError,
    StructuralAnomaly,
    SubkeyCountMismatch,
    TruncatedReadError,
    UnknownIndexKindError,
    UnknownSubentryKindError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from datetime import datetime

    from dissect.cstruct import Instance

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_REGVIEW", "CRITICAL"))


CellType = "KeyNode | HashLeaf | FastLeaf | IndexLeaf | IndexRoot"

STABLE = 0

HBIN_HEADER_SIZE = len(c_regview._HBIN)


def resolve(offset: int) -> int:
    """Convert a relative cell index to the absolute file offset of the cell data.

    Cell indices are relative to the first hive bin and point to the size field
    of the cell, the data follows directly after it.
    """
    return offset + HBASE_BLOCK_SIZE + CELL_SIZE_LENGTH


def validate_header(data: bytes) -> Instance:
    """Parse and validate the base block of a hive.

    Args:
        data: The raw bytes of the base block.

    Raises:
        BadSignatureError: If the buffer does not start with ``regf``.
        BadChecksumError: If the XOR checksum does not match the stored one.
        HeaderError: If the buffer is too short to hold a base block.
    """
    if (signature := data[:4]) != REGF_SIGNATURE:
        raise BadSignatureError(f"Invalid hive signature {signature!r}, expected {REGF_SIGNATURE!r}")

    if len(data) < len(c_regview._HBASE_BLOCK):
        raise HeaderError(f"Hive header is truncated, got {len(data)} bytes, expected {len(c_regview._HBASE_BLOCK)}")

    header = c_regview._HBASE_BLOCK(data)

    if (checksum := xor32_crc(data[:CHECKSUM_OFFSET])) != header.CheckSum:
        raise BadChecksumError(
            f"Hive header checksum mismatch, calculated 0x{checksum:08x} but stored 0x{header.CheckSum:08x}"
        )

    return header


def read_cell(fh: BinaryIO, offset: int, max_size: int = MAX_CELL_SIZE) -> tuple[bytes, int]:
    """Read the data of the allocated cell at the given absolute offset.

    The offset points at the cell data, as returned by :func:`resolve`. The size
    field is read from the four bytes preceding it.

    Returns:
        A tuple of the cell data and its length.
    """
    size = _read_cell_size(fh, offset - CELL_SIZE_LENGTH)
    if size >= 0:
        raise FreeCellError(f"Expected an allocated cell at 0x{offset:x}, found a free cell of {size} bytes", offset)

    real_size = -size - CELL_SIZE_LENGTH
    if real_size <= 0 or real_size > max_size:
        raise CellSizeError(f"Invalid cell size {real_size} at 0x{offset:x}, expected 1 to {max_size} bytes", offset)

    if len(data := _read(fh, offset, real_size)) != real_size:
        raise TruncatedReadError(
            f"Unexpected EOF reading cell at 0x{offset:x}, got {len(data)} of {real_size} bytes", offset
        )

    return data, real_size


def locate_root(fh: BinaryIO, max_size: int = MAX_CELL_SIZE, end: int | None = None) -> KeyNode:
    """Scan the hive bins cell by cell for the key node flagged as the hive root.

    Hive bin headers on page boundaries and free cells are skipped.

    Args:
        fh: The file-like object of the hive.
        max_size: The maximum size of an allocated cell.
        end: Absolute offset to stop scanning at, defaults to the end of the file.
    """
    offset = HBASE_BLOCK_SIZE

    while end is None or offset < end:
        # The root key should be in the first hive bin, but check every page boundary anyway
        if offset % HBASE_BLOCK_SIZE == 0 and _read(fh, offset, len(HBIN_SIGNATURE)) == HBIN_SIGNATURE:
            offset += HBIN_HEADER_SIZE

        if not (size_field := _read(fh, offset, CELL_SIZE_LENGTH)):
            break

        if len(size_field) != CELL_SIZE_LENGTH:
            raise TruncatedReadError(f"Unexpected EOF reading cell size at 0x{offset:x}", offset)

        if (size := struct.unpack("<i", size_field)[0]) >= 0:
            if size < CELL_SIZE_LENGTH:
                raise CellSizeError(f"Invalid free cell size {size} at 0x{offset:x}", offset)

            log.debug("Skipping free cell of %d bytes at 0x%x", size, offset)
            offset += size
            continue

        data, real_size = read_cell(fh, offset + CELL_SIZE_LENGTH, max_size)
        if data[:2] == KeyNode.__signature__:
            node = KeyNode(data, offset - HBASE_BLOCK_SIZE)
            if node.is_root:
                log.debug("Found root key %r at 0x%x", node.name, offset)
                return node

        offset += CELL_SIZE_LENGTH + real_size

    raise RootNotFoundError("Reached the end of the hive without finding the root key")


def _read(fh: BinaryIO, offset: int, size: int) -> bytes:
    try:
        fh.seek(offset)
        return fh.read(size)
    except OSError as e:
        raise HiveIOError(f"Failed to read {size} bytes at 0x{offset:x}: {e}") from e


def _read_cell_size(fh: BinaryIO, offset: int) -> int:
    if len(data := _read(fh, offset, CELL_SIZE_LENGTH)) != CELL_SIZE_LENGTH:
        raise TruncatedReadError(f"Unexpected EOF reading cell size at 0x{offset:x}", offset)

    return struct.unpack("<i", data)[0]


class RegistryHive:
    """A registry hive opened for a read-only walk of its key tree.

    Args:
        fh: A seekable binary file-like object of the hive.
        scan_root: Find the root key by scanning the hive bins instead of following
            the root cell index from the header.
        strict: Abort the walk on the first corrupt subkey index. If disabled, the
            remaining subkeys of the affected key are skipped and reported as an anomaly.
        max_cell_size: The maximum size of an allocated cell.
        max_depth: The maximum depth of the key tree, deeper subkeys are treated as corrupt.
        on_anomaly: Callback invoked with every :class:`StructuralAnomaly` found.
    """

    def __init__(
        self,
        fh: BinaryIO,
        *,
        scan_root: bool = True,
        strict: bool = True,
        max_cell_size: int = MAX_CELL_SIZE,
        max_depth: int = MAX_KEY_DEPTH,
        on_anomaly: Callable[[StructuralAnomaly], None] | None = None,
    ):
        self.fh = fh
        self.strict = strict
        self.max_cell_size = max_cell_size
        self.max_depth = max_depth
        self.on_anomaly = on_anomaly
        self.anomalies: list[StructuralAnomaly] = []

        self.header = validate_header(_read(self.fh, 0, HBASE_BLOCK_SIZE))
        self.version = (self.header.Major, self.header.Minor)
        self.filename = self.header.FileName.rstrip("\x00")
        log.debug("Hive %r checksum OK", self.filename)

        self.in_transaction = self.header.Sequence1 != self.header.Sequence2
        if self.in_transaction:
            log.warning(
                "The hive %r is undergoing a transaction, may not be able to read keys properly",
                self.filename,
            )

        if scan_root:
            end = HBASE_BLOCK_SIZE + self.header.Length if self.header.Length else None
            self._root = locate_root(self.fh, self.max_cell_size, end)
        else:
            self._root = self.key_node(self.header.RootCell)

    @cached_property
    def timestamp(self) -> datetime:
        return wintimestamp(self.header.TimeStamp)

    def root(self) -> KeyNode:
        return self._root

    def cell_data(self, offset: int) -> bytes:
        data, _ = read_cell(self.fh, resolve(offset), self.max_cell_size)
        return data

    def cell(self, offset: int) -> CellType:
        return parse_cell_data(self.cell_data(offset), offset)

    def key_node(self, offset: int) -> KeyNode:
        return decode_key_node(self.cell_data(offset), offset)

    def subkey_index(self, offset: int) -> KeyIndex:
        return decode_subkey_index(self.cell_data(offset), offset)

    def open(self, path: str) -> KeyNode:
        path = path.strip("\\")
        parts = path.split("\\") if path else []

        node = self._root
        for part in parts:
            node = self.subkey(node, part)

        return node

    def subkey(self, node: KeyNode, name: str) -> KeyNode:
        lname = name.lower()

        # Lookups only pass through keys, anomalies are reported by the walk
        for index in self._leaf_indices(node, report=False):
            for offset in index.candidates(name):
                if (sk := self.key_node(offset)).name.lower() == lname:
                    return sk

        raise RegistryKeyNotFoundError(name)

    def subkeys(self, node: KeyNode) -> Iterator[KeyNode]:
        """Yield the direct subkeys of a key node in on-disk index order."""
        for index in self._leaf_indices(node):
            for offset in index.cells:
                yield self.key_node(offset)

    def walk(self, node: KeyNode | None = None, depth: int = 0) -> Iterator[tuple[int, KeyNode]]:
        """Walk the key tree depth-first, yielding ``(depth, key node)`` tuples.

        Starts at the root key if no node is given. Nothing is cached, every call
        reads the tree from the file again.
        """
        if node is None:
            node = self._root

        yield from self._walk(node, depth, frozenset())

    def _walk(self, node: KeyNode, depth: int, ancestors: frozenset[int]) -> Iterator[tuple[int, KeyNode]]:
        yield depth, node

        ancestors = ancestors | {node.offset}
        for child in self._walk_subkeys(node, depth, ancestors):
            yield from self._walk(child, depth + 1, ancestors)

    def _walk_subkeys(self, node: KeyNode, depth: int, ancestors: frozenset[int]) -> Iterator[KeyNode]:
        try:
            if depth >= self.max_depth and node.num_subkeys:
                raise KeyDepthError(f"Key {node.name!r} exceeds the maximum key depth of {self.max_depth}")

            for child in self.subkeys(node):
                if child.offset in ancestors:
                    raise KeyCycleError(
                        f"Subkey at 0x{child.offset:x} of key {node.name!r} refers back to one of its ancestors"
                    )
                yield child
        except (CellError, DecodeError) as e:
            if self.strict:
                raise

            self._report(CorruptSubtree(f"Skipping remaining subkeys of {node.name!r}: {e}", node.offset, e))

    def _leaf_indices(self, node: KeyNode, report: bool = True) -> Iterator[HashList | IndexLeaf]:
        if (num_subkeys := node.num_subkeys) < 0:
            raise InvalidCountError(f"Key {node.name!r} has a negative subkey count {num_subkeys}")

        if num_subkeys == 0 or node.subkey_list_offset in (0, HCELL_NIL):
            return

        index = self.subkey_index(node.subkey_list_offset)

        if isinstance(index, HashList):
            if report and index.count != num_subkeys:
                self._report(
                    SubkeyCountMismatch(
                        f"Key {node.name!r} has {num_subkeys} subkeys, "
                        f"while the {index.__class__.__name__} has {index.count} elements",
                        node.offset,
                        num_subkeys,
                        index.count,
                    )
                )
            yield index

        elif isinstance(index, IndexRoot):
            for offset in index.cells:
                data = self.cell_data(offset)
                if data[:2] not in _LEAF_CLASSES:
                    raise UnknownSubentryKindError(
                        f"Unexpected {data[:2]!r} record at 0x{offset:x} in the index root of key {node.name!r}"
                    )

                yield decode_subkey_index(data, offset)

        else:
            yield index

    def _report(self, anomaly: StructuralAnomaly) -> None:
        log.warning("%s", anomaly)
        self.anomalies.append(anomaly)

        if self.on_anomaly is not None:
            self.on_anomaly(anomaly)


class Cell:
    __signature__ = b""
    __struct__ = None

    def __init__(self, data: bytes, offset: int | None = None):
        self.offset = offset

        if data[:2] != self.__signature__:
            raise InvalidSignatureError(
                f"Invalid {self.__class__.__name__} signature {data[:2]!r}, expected {self.__signature__!r}"
            )

        try:
            self.cell = self.__struct__(data)
        except EOFError:
            raise TruncatedReadError(
                f"{self.__class__.__name__} cell of {len(data)} bytes is too small, "
                f"expected at least {len(self.__struct__)} bytes",
                offset,
            ) from None


class KeyNode(Cell):
    __signature__ = b"nk"
    __struct__ = c_regview._CM_KEY_NODE

    def __init__(self, data: bytes, offset: int | None = None):
        super().__init__(data, offset)

        # The length of the name is only known after parsing the fixed size part
        name_length = self.cell.NameLength
        name_start = len(self.__struct__)
        if len(data) < name_start + name_length:
            raise NameLengthError(
                f"Key name of {name_length} bytes does not fit in a cell of {len(data)} bytes"
                + (f" at 0x{offset:x}" if offset is not None else "")
            )

        self.name_blob = bytes(data[name_start : name_start + name_length])
        self.name = decode_name(self.name_blob, name_length, bool(self.cell.Flags & KEY.COMP_NAME))

    def __repr__(self) -> str:
        return f"<KeyNode {self.name}>"

    @property
    def flags(self) -> int:
        return self.cell.Flags.value

    @property
    def is_root(self) -> bool:
        return bool(self.cell.Flags & KEY.HIVE_ENTRY)

    @property
    def is_symlink(self) -> bool:
        return bool(self.cell.Flags & KEY.SYM_LINK)

    @cached_property
    def timestamp(self) -> datetime:
        return wintimestamp(self.cell.LastWriteTime)

    @property
    def parent(self) -> int:
        return self.cell.Parent

    @property
    def num_subkeys(self) -> int:
        return self.cell.SubKeyCounts[STABLE]

    @property
    def subkey_list_offset(self) -> int:
        return self.cell.SubKeyLists[STABLE]

    @property
    def num_values(self) -> int:
        return self.cell.ValueList.Count

    @property
    def value_list_offset(self) -> int:
        return self.cell.ValueList.List

    @property
    def security_offset(self) -> int:
        return self.cell.Security

    @property
    def class_offset(self) -> int:
        return self.cell.Class


class KeyIndex(Cell):
    __struct__ = c_regview._CM_KEY_INDEX_HEADER
    __entry__ = c_regview.uint32
    __entry_size__ = 4

    def __init__(self, data: bytes, offset: int | None = None):
        super().__init__(data, offset)

        if (count := self.cell.Count) < 0:
            raise InvalidCountError(f"{self.__class__.__name__} has a negative entry count {count}")

        start = len(self.__struct__)
        if len(data) < start + count * self.__entry_size__:
            raise TruncatedReadError(
                f"{self.__class__.__name__} with {count} entries does not fit in a cell of {len(data)} bytes",
                offset,
            )

        self.entries = self.__entry__[count](data[start:]) if count else []

    def __len__(self) -> int:
        return self.count

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} count={self.count}>"

    @property
    def count(self) -> int:
        return self.cell.Count

    @property
    def cells(self) -> list[int]:
        """The relative offsets of the records this index points to."""
        return list(self.entries)

    def candidates(self, name: str) -> Iterator[int]:
        """Yield the offsets of the key nodes that may carry the given name."""
        yield from self.cells


class IndexRoot(KeyIndex):
    __signature__ = b"ri"


class IndexLeaf(KeyIndex):
    __signature__ = b"li"


class HashList(KeyIndex):
    __entry_size__ = 8

    @property
    def cells(self) -> list[int]:
        return [entry.Cell for entry in self.entries]


class HashLeaf(HashList):
    __signature__ = b"lh"
    __entry__ = c_regview._CM_HASH_INDEX

    def candidates(self, name: str) -> Iterator[int]:
        name_hash = hashname(name)

        for entry in self.entries:
            if entry.HashKey == name_hash:
                yield entry.Cell


class FastLeaf(HashList):
    __signature__ = b"lf"
    __entry__ = c_regview._CM_INDEX

    def candidates(self, name: str) -> Iterator[int]:
        name_hint = name.lower()[:4]

        for entry in self.entries:
            # If names are < 4 characters, the name hint is padded with 0-bytes
            if entry.NameHint.rstrip(b"\x00").decode("latin1").lower() == name_hint:
                yield entry.Cell


_LEAF_CLASSES = {
    IndexLeaf.__signature__: IndexLeaf,
    FastLeaf.__signature__: FastLeaf,
    HashLeaf.__signature__: HashLeaf,
}

_INDEX_CLASSES = {
    IndexRoot.__signature__: IndexRoot,
    **_LEAF_CLASSES,
}

_CELL_CLASSES = {
    KeyNode.__signature__: KeyNode,
    **_INDEX_CLASSES,
}


def decode_key_node(data: bytes, offset: int | None = None) -> KeyNode:
    return KeyNode(data, offset)


def decode_subkey_index(data: bytes, offset: int | None = None) -> KeyIndex:
    if (cls := _INDEX_CLASSES.get(sig := data[:2])) is None:
        raise UnknownIndexKindError(
            f"Unknown subkey index signature {sig!r}" + (f" at 0x{offset:x}" if offset is not None else "")
        )

    return cls(data, offset)


def parse_cell_data(data: bytes, offset: int | None = None) -> CellType:
    if (cls := _CELL_CLASSES.get(sig := data[:2])) is None:
        raise UnknownIndexKindError(f"Unknown cell signature {sig!r}")

    return cls(data, offset)


def decode_name(blob: bytes, size: int, is_comp_name: bool) -> str:
    if is_comp_name:
        try:
            return blob.decode()
        except UnicodeDecodeError:
            pass

        return blob.decode("latin1")

    try:
        return c_regview.wchar[size // 2](blob)
    except UnicodeDecodeError:
        pass

    return repr(blob)


def hashname(name: str) -> int:
    # Names of keys are only supposed to contain printable characters except
    # the `\' character, so ord() on the upper cased str is good enough.
    name_hash = 0
    for char in name.upper():
        name_hash = (name_hash * 37 + ord(char)) & 0xFFFFFFFF

    return name_hash


def xor32_crc(data: bytes) -> int:
    crc = 0
    for ii in c_regview.uint32[len(data) // 4](data):
        crc ^= ii

    return crc
