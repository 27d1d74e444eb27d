from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from dissect.util.ts import wintimestamp

from dissect.regview.c_regview import MAX_CELL_SIZE, MAX_KEY_DEPTH
from dissect.regview.exceptions import Error
from dissect.regview.regview import RegistryHive

if TYPE_CHECKING:
    from dissect.regview.exceptions import StructuralAnomaly
    from dissect.regview.regview import KeyNode


def format_timestamp(ticks: int) -> str:
    """Format a tick timestamp as UTC, falling back to the raw value if it can't be represented."""
    try:
        return wintimestamp(ticks).strftime("%Y-%m-%d %H:%M:%S UTC")
    except (ValueError, OverflowError, OSError):
        return f"0x{ticks:016x} (out of range)"


def format_node(node: KeyNode) -> str:
    return (
        f"{node.__signature__.decode()}: type 0x{node.flags:x} parent 0x{node.parent:x}, "
        f"{node.num_subkeys} subkeys at 0x{node.subkey_list_offset:x}, "
        f"{node.num_values} values at 0x{node.value_list_offset:x}, "
        f"security descriptor at 0x{node.security_offset:x}, "
        f"last written {format_timestamp(node.cell.LastWriteTime)}, name {node.name}"
    )


def print_tree(
    hive: RegistryHive, node: KeyNode | None = None, verbose: bool = False, fh: TextIO | None = None
) -> None:
    for depth, key in hive.walk(node):
        print(" " * depth + (format_node(key) if verbose else key.name), file=fh)


def _print_anomaly(anomaly: StructuralAnomaly) -> None:
    print(f"WARN: {anomaly}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the key tree of a Windows registry hive.")
    parser.add_argument("hive", type=Path, nargs="?", help="path to the registry hive")
    parser.add_argument("key", nargs="?", default="", help="backslash separated path of the key to start at")
    parser.add_argument("-v", "--verbose", action="store_true", help="print the metadata of every key")
    parser.add_argument(
        "--root-cell",
        action="store_true",
        help="use the root cell index from the header instead of scanning for the root key",
    )
    parser.add_argument(
        "--skip-corrupt",
        action="store_true",
        help="skip subkeys with a corrupt index instead of aborting",
    )
    parser.add_argument(
        "--max-cell-size",
        type=lambda value: int(value, 0),
        default=MAX_CELL_SIZE,
        help="maximum size of an allocated cell (default: 0x%(default)x)",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=MAX_KEY_DEPTH,
        help="maximum depth of the key tree (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    if args.hive is None:
        parser.print_usage(sys.stderr)
        return 1

    try:
        with args.hive.open("rb") as fh:
            hive = RegistryHive(
                fh,
                scan_root=not args.root_cell,
                strict=not args.skip_corrupt,
                max_cell_size=args.max_cell_size,
                max_depth=args.max_depth,
                on_anomaly=_print_anomaly,
            )
            print(f"Last modification time: {format_timestamp(hive.header.TimeStamp)}")

            print_tree(hive, hive.open(args.key), args.verbose)
    except (OSError, Error) as e:
        sys.stdout.flush()
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
