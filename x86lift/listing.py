"""
NASM-syntax listing of an image's sections.

Every byte of a section is rendered exactly once: as part of a decoded
instruction (a `db` line carrying the instruction bytes with the disassembly
as a comment) or as a single data byte. Function and basic block addresses
get `sub_XXXXXX` labels and `; block_XXXXXX` markers, and the entry point,
import table, resource table and IAT are labelled from the data
directories.
"""

from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple, Union

from .disasm import Function, Instruction
from .errors import InvariantViolation
from .image import DIR_IAT, DIR_IMPORT, DIR_RESOURCE, Image, Section


ADDR_PREFIX = "  addr_{:06X}:          db      "
COMMENT_COLUMN = 80

Item = Tuple[str, int, Union[Instruction, int]]  # ("insn" | "data", addr, insn or byte)


def section_label(section: Section) -> str:
    return section.name.replace(".", "_")


def index_functions(funcs: Iterable[Function]):
    """Index functions, basic blocks and instructions by address."""
    func_index: Dict[int, Function] = {}
    blocks = set()
    insns: Dict[int, Instruction] = {}
    for func in funcs:
        func_index[func.address] = func
        for block in func.blocks.values():
            blocks.add(block.address)
            for insn in block.all_instructions():
                insns[insn.address] = insn
    return func_index, blocks, insns


def iter_items(section: Section, insns: Dict[int, Instruction]) -> Iterator[Item]:
    """
    Walk the file-backed bytes of a section, yielding one item per
    instruction (executable sections only) or data byte.
    """
    addr = section.address
    end = section.end
    while addr < end:
        insn = insns.get(addr) if section.is_code else None
        if insn is not None:
            if insn.end_address > end:
                raise InvariantViolation(
                    f"instruction at 0x{addr:08X} runs past the end of section {section.name}")
            yield "insn", addr, insn
            addr = insn.end_address
            continue
        yield "data", addr, section.data[addr - section.address]
        addr += 1


def byte_coverage(section: Section, funcs: Iterable[Function]) -> Dict[int, str]:
    """
    Map every address of the section's bytes to "insn" or "data".
    Raises InvariantViolation if a byte would be rendered twice.
    """
    _, _, insns = index_functions(funcs)
    coverage = {}
    for kind, addr, item in iter_items(section, insns):
        size = item.size if kind == "insn" else 1
        for a in range(addr, addr + size):
            if a in coverage:
                raise InvariantViolation(f"byte 0x{a:08X} rendered twice")
            coverage[a] = kind
    return coverage


def _char_comment(b: int) -> str:
    if 0x20 <= b < 0x7F:
        c = chr(b)
        if c in "'\\":
            c = "\\" + c
        return f" ; '{c}'"
    return ""


def _labels(image: Image) -> Dict[int, List[str]]:
    it_start, it_end = image.directory_range(DIR_IMPORT)
    rsrc_start, rsrc_end = image.directory_range(DIR_RESOURCE)
    iat_start, iat_end = image.directory_range(DIR_IAT)
    labels: Dict[int, List[str]] = {}
    for addr, text in (
        (image.entry, "\nstart:\n"),
        (it_start, "\nimport_table:\n"),
        (it_end, "\n   import_table_size    equ     $ - import_table\n"),
        (rsrc_start, "\nresource_table:\n"),
        (rsrc_end, "\n   resource_table_size  equ     $ - $$\n"),
        (iat_start, "\niat:\n"),
        (iat_end, "\niat_size             equ     $ - iat\n"),
    ):
        labels.setdefault(addr, []).append(text)
    return labels


def _pad(used: int, width: int) -> str:
    return " " * (width - used) if width > used else " "


def render_section(section: Section, image: Image, funcs: Iterable[Function]) -> str:
    """Render one section as NASM source."""
    func_index, blocks, insns = index_functions(funcs)
    labels = _labels(image)
    name = section_label(section)
    out = [
        f"; <{section.name}>\n",
        ";\n",
        f";    file offset:    0x{section.offset:08X}\n",
        f";    virtual offset: 0x{section.address:08X}\n",
        "\n",
        f"SECTION {section.name}\n",
        "\n",
    ]

    for kind, addr, item in iter_items(section, insns):
        out.extend(labels.get(addr, ()))
        if section.is_code:
            if addr in func_index:
                if addr != section.address:
                    out.append("\n")
                out.append(f"times (0x{addr:06X} - {name}_vstart) - ($ - $$) db 0xCC\n")
                out.append(f"sub_{addr:06X}:\n")
            if addr in blocks:
                out.append(f"; block_{addr:06X}\n")

        prefix = ADDR_PREFIX.format(addr)
        if kind == "insn":
            raw = section.data[addr - section.address:item.end_address - section.address]
            hexbytes = ", ".join(f"0x{b:02X}" for b in raw)
            text = f"{item.mnemonic} {item.op_str}".rstrip()
            out.append(f"{prefix}{hexbytes}{_pad(len(prefix) + len(hexbytes), COMMENT_COLUMN)}; {text}\n")
        else:
            out.append(f"{prefix}0x{item:02X}{_char_comment(item)}\n")

    # Labels at the end address of the section
    out.extend(labels.get(section.end, ()))

    if section.mem_size > len(section.data):
        size_label = f"   {name}_size"
        out.append(f"\n{size_label}{_pad(len(size_label), 24)}equ     $ - $$\n")
        out.append("\n; Uninitialized data (allocated by the linker).\n")
        out.append(f";times {name}_vsize - ($ - $$) resb 1\n")
    else:
        size_label = f"   {name}_vsize"
        out.append(f"\n{size_label}{_pad(len(size_label), 24)}equ     $ - $$\n")
        out.append("\n; Section alignment.\n")
        out.append(f"times {name}_size - ($ - $$) db 0x00\n")
    return "".join(out)


def write_listing(out_dir, image: Image, funcs: Iterable[Function]) -> List[Path]:
    """Write one <section>.asm file per named section. Returns the paths written."""
    funcs = list(funcs)
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    paths = []
    for section in image.sections:
        if not section.name:
            continue
        path = out / f"{section_label(section)}.asm"
        path.write_text(render_section(section, image, funcs))
        paths.append(path)
    return paths
