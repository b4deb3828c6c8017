"""
In-memory model of a loaded executable image.

Sections carry their raw bytes and permissions; the lifter and the listing
renderer only ever read from them. pe_analyze.load_image() builds an Image
from a PE file.
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


# Data directory indices used to delimit special regions in listings
DIR_IMPORT = 1
DIR_RESOURCE = 2
DIR_IAT = 12

NUM_DATA_DIRS = 16


class Perm(enum.IntFlag):
    R = 0x1
    W = 0x2
    X = 0x4


@dataclass
class Section:
    name: str
    address: int   # VA of the first byte
    data: bytes    # bytes physically present in the file
    offset: int    # file offset of data
    mem_size: int  # declared size in memory
    perm: Perm = Perm.R

    def __post_init__(self):
        if self.mem_size < len(self.data):
            raise ValueError(
                f"section {self.name}: memory size 0x{self.mem_size:X} "
                f"smaller than raw size 0x{len(self.data):X}")

    @property
    def is_code(self) -> bool:
        return bool(self.perm & Perm.X)

    @property
    def end(self) -> int:
        """VA past the last byte present in the file."""
        return self.address + len(self.data)

    @property
    def mem_end(self) -> int:
        return self.address + self.mem_size

    def contains(self, va: int) -> bool:
        return self.address <= va < self.mem_end


@dataclass
class DataDirectory:
    rel_addr: int
    size: int


@dataclass
class ImportEntry:
    dll: str
    name: Optional[str]
    ordinal: Optional[int]
    iat_va: int  # IAT slot address


@dataclass
class Image:
    path: str
    entry: int       # absolute entry point address
    image_base: int
    sections: List[Section] = field(default_factory=list)
    data_dirs: List[DataDirectory] = field(default_factory=list)
    imports: List[ImportEntry] = field(default_factory=list)

    def __post_init__(self):
        self.sections.sort(key=lambda s: s.address)
        while len(self.data_dirs) < NUM_DATA_DIRS:
            self.data_dirs.append(DataDirectory(0, 0))

    def section_at(self, va: int) -> Optional[Section]:
        """Find the section whose memory range contains va."""
        for sect in self.sections:
            if sect.contains(va):
                return sect
        return None

    def read(self, va: int, size: int) -> Optional[bytes]:
        """
        Read up to size bytes at va from the file-backed part of a section.
        Returns None if va is not backed by file data; the result may be
        shorter than size at the end of a section.
        """
        sect = self.section_at(va)
        if sect is None or va >= sect.end:
            return None
        off = va - sect.address
        return sect.data[off:off + size]

    def directory_range(self, index: int) -> Tuple[int, int]:
        """Absolute [start, end) of a data directory."""
        d = self.data_dirs[index]
        start = self.image_base + d.rel_addr
        return start, start + d.size

    def iat_map(self) -> Dict[int, Tuple[str, str]]:
        """IAT slot VA -> (dll, function_name)."""
        iat = {}
        for imp in self.imports:
            name = imp.name if imp.name else f"ordinal_{imp.ordinal}"
            iat[imp.iat_va] = (imp.dll, name)
        return iat
