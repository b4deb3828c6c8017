"""
Chunk classification.

Merges the basic block and data address lists into one ascending sequence
of kind-tagged chunk boundaries describing how the bytes of the image are
partitioned. A chunk runs from its address to the next chunk's address (or
the end of its section).
"""

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .errors import ConflictingClassificationError
from .image import Section


class ChunkKind(Enum):
    CODE = "code"
    DATA = "data"


@dataclass(frozen=True, order=True)
class Chunk:
    addr: int
    kind: ChunkKind

    def __repr__(self):
        return f"{self.kind.name.capitalize()}@0x{self.addr:X}"


def classify_chunks(block_addrs: Iterable[int], data_addrs: Iterable[int]) -> List[Chunk]:
    """
    Tag every basic block address as a code chunk and every data address as
    a data chunk. Function addresses are not chunks; they are a subset of the
    block addresses and are tracked separately.
    """
    blocks = set(block_addrs)
    data = set(data_addrs)

    conflicts = blocks & data
    if conflicts:
        raise ConflictingClassificationError(conflicts)

    chunks = [Chunk(addr, ChunkKind.CODE) for addr in blocks]
    chunks.extend(Chunk(addr, ChunkKind.DATA) for addr in data)
    chunks.sort(key=lambda c: c.addr)
    return chunks


def chunk_at(chunks: List[Chunk], addr: int) -> Optional[Chunk]:
    """Return the chunk whose range contains addr (the last chunk at or below it)."""
    i = bisect_right(chunks, addr, key=lambda c: c.addr)
    if i == 0:
        return None
    return chunks[i - 1]


def next_chunk(chunks: List[Chunk], addr: int) -> Optional[Chunk]:
    """Return the first chunk strictly above addr."""
    i = bisect_right(chunks, addr, key=lambda c: c.addr)
    if i == len(chunks):
        return None
    return chunks[i]


def chunk_end(chunks: List[Chunk], chunk: Chunk, section: Section) -> int:
    """End address of a chunk: the next chunk's address, capped at the section end."""
    nxt = next_chunk(chunks, chunk.addr)
    if nxt is None or nxt.addr > section.end:
        return section.end
    return nxt.addr
