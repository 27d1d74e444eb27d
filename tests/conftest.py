from __future__ import annotations

import struct
from io import BytesIO
from typing import TYPE_CHECKING, BinaryIO

import pytest

if TYPE_CHECKING:
    from collections.abc import Iterator

HCELL_NIL = 0xFFFFFFFF

KEY_ROOT = 0x2C
KEY_NODE = 0x20
KEY_LINK = 0x10


def build_header(root_cell: int = 0x20, length: int = 0x1000, sequence: tuple[int, int] = (1, 1)) -> bytearray:
    header = bytearray(0x1000)
    header[0:4] = b"regf"
    struct.pack_into("<II", header, 0x04, *sequence)
    struct.pack_into("<Q", header, 0x0C, 116444736005000000)
    struct.pack_into("<IIII", header, 0x14, 1, 5, 0, 1)
    struct.pack_into("<III", header, 0x24, root_cell, length, 1)
    filename = "SYNTHETIC".encode("utf-16-le")
    header[0x30 : 0x30 + len(filename)] = filename
    fix_checksum(header)
    return header


def fix_checksum(header: bytearray) -> None:
    checksum = 0
    for (word,) in struct.iter_unpack("<I", header[:0x1FC]):
        checksum ^= word
    struct.pack_into("<I", header, 0x1FC, checksum)


def key_node(
    name: str,
    flags: int = KEY_NODE,
    num_subkeys: int = 0,
    subkey_list: int = HCELL_NIL,
    parent: int = 0,
    timestamp: int = 0,
) -> bytes:
    name_blob = name.encode("latin1")
    return b"".join(
        [
            struct.pack("<2sHQII", b"nk", flags, timestamp, 0, parent),
            struct.pack("<iiII", num_subkeys, 0, subkey_list, HCELL_NIL),
            struct.pack("<iI", 0, HCELL_NIL),
            struct.pack("<II", HCELL_NIL, HCELL_NIL),
            struct.pack("<5I", 0, 0, 0, 0, 0),
            struct.pack("<HH", len(name_blob), 0),
            name_blob,
        ]
    )


def hash_leaf(entries: list[tuple[int, str]], count: int | None = None) -> bytes:
    data = struct.pack("<2sh", b"lh", len(entries) if count is None else count)
    for offset, name in entries:
        data += struct.pack("<II", offset, hashname(name))
    return data


def fast_leaf(entries: list[tuple[int, str]]) -> bytes:
    data = struct.pack("<2sh", b"lf", len(entries))
    for offset, name in entries:
        data += struct.pack("<I4s", offset, name.encode("latin1")[:4])
    return data


def offset_list(signature: bytes, offsets: list[int], count: int | None = None) -> bytes:
    data = struct.pack("<2sh", signature, len(offsets) if count is None else count)
    return data + b"".join(struct.pack("<I", offset) for offset in offsets)


def hashname(name: str) -> int:
    name_hash = 0
    for char in name.upper():
        name_hash = (name_hash * 37 + ord(char)) & 0xFFFFFFFF
    return name_hash


class HiveBuilder:
    """Lays out cells in a single hive bin, offsets returned are relative to the first hive bin."""

    KEY_ROOT = KEY_ROOT
    KEY_NODE = KEY_NODE
    KEY_LINK = KEY_LINK

    key_node = staticmethod(key_node)
    hash_leaf = staticmethod(hash_leaf)
    fast_leaf = staticmethod(fast_leaf)
    offset_list = staticmethod(offset_list)

    def __init__(self):
        self.bins = bytearray(b"hbin" + bytes(0x1C))

    def add(self, payload: bytes) -> int:
        offset = len(self.bins)
        size = (len(payload) + 4 + 7) & ~7
        self.bins += struct.pack("<i", -size) + payload.ljust(size - 4, b"\x00")
        return offset

    def add_free(self, size: int) -> int:
        offset = len(self.bins)
        self.bins += struct.pack("<i", size) + bytes(size - 4)
        return offset

    def pad_to(self, offset: int) -> None:
        self.add_free(offset - len(self.bins))

    def patch(self, offset: int, payload: bytes) -> None:
        self.bins[offset + 4 : offset + 4 + len(payload)] = payload

    def build(self, root_cell: int = 0x20, sequence: tuple[int, int] = (1, 1)) -> bytes:
        bins = bytearray(self.bins)
        if remaining := -len(bins) % 0x1000:
            bins += struct.pack("<i", remaining) + bytes(remaining - 4)
        struct.pack_into("<I", bins, 0x08, len(bins))

        return bytes(build_header(root_cell, len(bins), sequence) + bins)

    def open(self, **kwargs) -> BinaryIO:
        return BytesIO(self.build(**kwargs))


@pytest.fixture
def builder() -> HiveBuilder:
    return HiveBuilder()


@pytest.fixture
def minimal_hive() -> Iterator[BinaryIO]:
    builder = HiveBuilder()
    builder.add(key_node("ROOT", flags=KEY_ROOT))
    yield BytesIO(builder.build())


@pytest.fixture
def software_hive() -> Iterator[BinaryIO]:
    builder = HiveBuilder()

    run = builder.add(key_node("Run"))
    windows = builder.add(key_node("Windows"))
    current_list = builder.add(fast_leaf([(run, "Run")]))
    current = builder.add(key_node("CurrentVersion", num_subkeys=1, subkey_list=current_list))
    microsoft = builder.add(
        key_node(
            "Microsoft",
            num_subkeys=2,
            subkey_list=builder.add(offset_list(b"li", [windows, current])),
        )
    )
    classes = builder.add(key_node("Classes"))
    software_list = builder.add(hash_leaf([(classes, "Classes"), (microsoft, "Microsoft")]))
    software = builder.add(key_node("Software", num_subkeys=2, subkey_list=software_list))
    system = builder.add(key_node("System"))
    root_list = builder.add(hash_leaf([(software, "Software"), (system, "System")]))
    root = builder.add(key_node("ROOT", flags=KEY_ROOT, num_subkeys=2, subkey_list=root_list))

    yield BytesIO(builder.build(root_cell=root))
