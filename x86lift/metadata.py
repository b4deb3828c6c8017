"""
Loader for the externally supplied address metadata.

Three JSON files, each an array of addresses, describe the executable:
funcs.json (function entry points), blocks.json (basic block starts) and
data.json (data items such as jump tables). Addresses are JSON integers or
hex strings like "0x00401000".
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .errors import MetadataError


FUNCS_JSON = "funcs.json"
BLOCKS_JSON = "blocks.json"
DATA_JSON = "data.json"


@dataclass(frozen=True)
class AddressMetadata:
    funcs: Tuple[int, ...]
    blocks: Tuple[int, ...]
    data: Tuple[int, ...]


def parse_addr(value) -> int:
    """Parse a single address given as an int or a hex/decimal string."""
    if isinstance(value, bool):
        raise ValueError(f"invalid address {value!r}")
    if isinstance(value, int):
        addr = value
    elif isinstance(value, str):
        addr = int(value, 0)
    else:
        raise ValueError(f"invalid address {value!r}")
    if addr < 0 or addr > 0xFFFFFFFFFFFFFFFF:
        raise ValueError(f"address out of range: {value!r}")
    return addr


def parse_addrs(json_path) -> Tuple[int, ...]:
    """
    Parse the given JSON file and return the sorted, de-duplicated
    addresses contained within.
    """
    try:
        with open(json_path) as f:
            raw = json.load(f)
    except OSError as e:
        raise MetadataError(json_path, e.strerror or str(e)) from e
    except json.JSONDecodeError as e:
        raise MetadataError(json_path, f"invalid JSON: {e}") from e

    if not isinstance(raw, list):
        raise MetadataError(json_path, f"expected a JSON array, got {type(raw).__name__}")

    addrs = set()
    for i, value in enumerate(raw):
        try:
            addrs.add(parse_addr(value))
        except ValueError as e:
            raise MetadataError(json_path, f"element {i}: {e}") from e
    return tuple(sorted(addrs))


def load_metadata(directory=".") -> AddressMetadata:
    """Load funcs.json, blocks.json and data.json from a directory."""
    d = Path(directory)
    return AddressMetadata(
        funcs=parse_addrs(d / FUNCS_JSON),
        blocks=parse_addrs(d / BLOCKS_JSON),
        data=parse_addrs(d / DATA_JSON),
    )
