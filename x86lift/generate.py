"""
Batch lifting driver.

Decodes and lifts a list of functions, one at a time and in ascending
address order. Decode and opcode failures are attributable to a single
function: they are recorded in the LiftReport and lifting continues with the
next function, so every function that can be lifted is.
"""

import json
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from llvmlite import ir

from .disasm import Function, FunctionBuilder, func_name
from .errors import DecodeError, UnsupportedOpcodeError
from .lifter import Lifter


PROGRESS_EVERY = 500


def status(msg: str, quiet: bool = False):
    """Progress line on stderr; stdout is reserved for IR."""
    if not quiet:
        print(f"[*] {msg}", file=sys.stderr, flush=True)


def warn(msg: str):
    print(f"[!] {msg}", file=sys.stderr, flush=True)


@dataclass
class LiftFailure:
    address: int
    kind: str  # exception class name
    message: str

    @property
    def name(self) -> str:
        return func_name(self.address)

    def __str__(self):
        return f"{self.name}: {self.kind}: {self.message}"


@dataclass
class LiftedFunction:
    address: int
    function: Function
    module: ir.Module

    @property
    def name(self) -> str:
        return self.function.name


@dataclass
class LiftReport:
    lifted: List[LiftedFunction] = field(default_factory=list)
    failures: List[LiftFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def functions(self) -> List[Function]:
        return [f.function for f in self.lifted]


def lift_one(builder: FunctionBuilder, lifter: Lifter, addr: int) -> LiftedFunction:
    func = builder.decode_function(addr)
    return LiftedFunction(addr, func, lifter.lift_function(func))


def lift_functions(builder: FunctionBuilder, lifter: Lifter, addrs: Iterable[int],
                   quiet: bool = True) -> LiftReport:
    """Decode and lift each function; failures are collected, not raised."""
    addrs = sorted(set(addrs))
    report = LiftReport()
    start = time.time()

    for idx, addr in enumerate(addrs, 1):
        try:
            report.lifted.append(lift_one(builder, lifter, addr))
        except (DecodeError, UnsupportedOpcodeError) as e:
            failure = LiftFailure(addr, type(e).__name__, str(e))
            report.failures.append(failure)
            warn(str(failure))

        if idx % PROGRESS_EVERY == 0:
            elapsed = time.time() - start
            rate = idx / elapsed if elapsed > 0 else 0
            status(f"{idx}/{len(addrs)} functions ({rate:.0f}/s, "
                   f"{len(report.failures)} err)", quiet)

    status(f"{len(report.lifted)} functions lifted, {len(report.failures)} failed "
           f"({time.time() - start:.1f}s)", quiet)
    return report


def write_modules(out_dir, report: LiftReport) -> List[Path]:
    """
    Write one <name>.ll per lifted function plus functions.json, an index
    of the lifted and failed functions. Returns the .ll paths.
    """
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    paths = []
    for lifted in report.lifted:
        path = out / f"{lifted.name}.ll"
        path.write_text(str(lifted.module))
        paths.append(path)

    index = {
        "functions": [{
            "address": f"0x{f.address:08X}",
            "name": f.name,
            "num_blocks": len(f.function.blocks),
            "num_instructions": f.function.num_instructions,
        } for f in report.lifted],
        "failures": [{
            "address": f"0x{f.address:08X}",
            "kind": f.kind,
            "message": f.message,
        } for f in report.failures],
    }
    with open(out / "functions.json", "w") as f:
        json.dump(index, f, indent=2)
    return paths
