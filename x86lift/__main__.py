"""
CLI entry point for the lifter.

Usage:
    python -m x86lift <image.exe> [options]

Examples:
    python -m x86lift game.exe --metadata meta/ > game.ll
    python -m x86lift game.exe -f 0x401000
    python -m x86lift game.exe -q -o out/ --listing out/asm/
"""

import argparse
import sys

from .chunks import classify_chunks
from .decoder import make_decoder
from .disasm import FunctionBuilder
from .errors import ConflictingClassificationError, MetadataError
from .generate import lift_functions, status, write_modules
from .lifter import Lifter
from .listing import write_listing
from .metadata import load_metadata, parse_addr
from .pe_analyze import build_iat_map, load_image


def _address(value: str) -> int:
    try:
        return parse_addr(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="x86lift",
        description="Lift x86-32 PE executables to LLVM IR, one function at a time, "
                    "from externally supplied function/block/data addresses",
    )
    parser.add_argument(
        "image",
        help="Path to the PE executable",
    )
    parser.add_argument(
        "-f", "--func",
        type=_address,
        default=None,
        help="Lift only the function at this address (e.g. 0x401000); "
             "default: all functions in funcs.json",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress progress output",
    )
    parser.add_argument(
        "--metadata",
        default=".",
        help="Directory holding funcs.json, blocks.json and data.json (default: .)",
    )
    parser.add_argument(
        "-o", "--output",
        dest="output_dir",
        default=None,
        help="Write one .ll file per function to this directory instead of stdout",
    )
    parser.add_argument(
        "--listing",
        dest="listing_dir",
        default=None,
        help="Also write a NASM listing (one .asm per section) to this directory",
    )
    return parser


def run(args) -> bool:
    quiet = args.quiet

    status(f"Loading PE: {args.image}", quiet)
    image = load_image(args.image)
    meta = load_metadata(args.metadata)
    chunks = classify_chunks(meta.blocks, meta.data)
    status(f"{len(meta.funcs)} functions, {len(meta.blocks)} blocks, "
           f"{len(meta.data)} data items", quiet)

    if args.func is not None:
        if args.func not in meta.funcs:
            raise ValueError(f"0x{args.func:08X} is not a known function address")
        addrs = [args.func]
    else:
        addrs = meta.funcs

    builder = FunctionBuilder(image, make_decoder(), meta.funcs, meta.blocks, chunks)
    lifter = Lifter(iat_map=build_iat_map(image), func_addrs=meta.funcs)
    report = lift_functions(builder, lifter, addrs, quiet=quiet)

    if args.output_dir:
        paths = write_modules(args.output_dir, report)
        status(f"Wrote {len(paths)} modules to {args.output_dir}", quiet)
    else:
        for lifted in report.lifted:
            sys.stdout.write(str(lifted.module))
            sys.stdout.write("\n")

    if args.listing_dir:
        paths = write_listing(args.listing_dir, image, report.functions)
        status(f"Wrote {len(paths)} listings to {args.listing_dir}", quiet)

    return report.ok


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        success = run(args)
        sys.exit(0 if success else 1)

    except (MetadataError, ConflictingClassificationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
