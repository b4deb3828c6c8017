"""
PE Binary Analyzer.
Parses PE headers, sections, data directories and imports into the Image
model consumed by the disassembler, lifter and listing renderer.
"""

import sys
import pefile
from pathlib import Path

from .image import (
    Image, Section, DataDirectory, ImportEntry, Perm,
    DIR_IMPORT, DIR_RESOURCE, DIR_IAT,
)


IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000


def section_perm(characteristics: int) -> Perm:
    perm = Perm(0)
    if characteristics & IMAGE_SCN_MEM_READ:
        perm |= Perm.R
    if characteristics & IMAGE_SCN_MEM_WRITE:
        perm |= Perm.W
    if characteristics & IMAGE_SCN_MEM_EXECUTE:
        perm |= Perm.X
    return perm


def load_image(filepath: str) -> Image:
    """Parse a PE file into an Image."""
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"PE file not found: {filepath}")
    try:
        pe = pefile.PE(str(path))
    except pefile.PEFormatError as e:
        raise ValueError(f"{filepath}: {e}") from e

    image_base = pe.OPTIONAL_HEADER.ImageBase

    sections = []
    for s in pe.sections:
        name = s.Name.rstrip(b'\x00').decode('ascii', errors='replace')
        data = s.get_data()
        sections.append(Section(
            name=name,
            address=image_base + s.VirtualAddress,
            data=data,
            offset=s.PointerToRawData,
            # Raw size exceeds the virtual size in sections with file padding
            mem_size=max(s.Misc_VirtualSize, len(data)),
            perm=section_perm(s.Characteristics),
        ))

    data_dirs = [DataDirectory(d.VirtualAddress, d.Size)
                 for d in pe.OPTIONAL_HEADER.DATA_DIRECTORY]

    imports = []
    if hasattr(pe, 'DIRECTORY_ENTRY_IMPORT'):
        for dll_entry in pe.DIRECTORY_ENTRY_IMPORT:
            dll_name = dll_entry.dll.decode('ascii', errors='replace')
            for imp in dll_entry.imports:
                imports.append(ImportEntry(
                    dll=dll_name,
                    name=imp.name.decode('ascii', errors='replace') if imp.name else None,
                    ordinal=imp.ordinal if not imp.name else None,
                    iat_va=imp.address,
                ))

    image = Image(
        path=str(path),
        entry=image_base + pe.OPTIONAL_HEADER.AddressOfEntryPoint,
        image_base=image_base,
        sections=sections,
        data_dirs=data_dirs,
        imports=imports,
    )

    pe.close()
    return image


def build_iat_map(image: Image) -> dict:
    """Build a map from IAT VA -> (dll, function_name) for resolving import calls."""
    return image.iat_map()


def print_summary(image: Image, file=sys.stderr):
    """Print a human-readable summary of the image."""
    print(f"=== {Path(image.path).name} ===", file=file)
    print(f"  Image Base:    0x{image.image_base:08X}", file=file)
    print(f"  Entry Point:   0x{image.entry:08X}", file=file)
    for label, index in (("Import Table", DIR_IMPORT), ("Resources", DIR_RESOURCE), ("IAT", DIR_IAT)):
        start, end = image.directory_range(index)
        if end > start:
            print(f"  {label + ':':15s}0x{start:08X} - 0x{end:08X}", file=file)
    print(file=file)
    print("  Sections:", file=file)
    for s in image.sections:
        flags = []
        if s.perm & Perm.R: flags.append("READ")
        if s.perm & Perm.W: flags.append("WRITE")
        if s.perm & Perm.X: flags.append("EXEC")
        print(f"    {s.name:8s}  VA 0x{s.address:08X}  Size 0x{s.mem_size:08X}  "
              f"Raw 0x{s.offset:08X}  [{', '.join(flags)}]", file=file)
    print(file=file)
    dlls = {i.dll for i in image.imports}
    print(f"  Imports: {len(image.imports)} functions from {len(dlls)} DLLs", file=file)


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print(f"Usage: {sys.argv[0]} <pe_file>")
        sys.exit(1)

    print_summary(load_image(sys.argv[1]), file=sys.stdout)
