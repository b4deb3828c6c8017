"""Shared fixtures: synthetic images, a table-driven decoder and a JIT."""

import ctypes
import platform
import sys

import pytest

from x86lift.chunks import classify_chunks
from x86lift.disasm import FunctionBuilder, Instruction, Operand
from x86lift.errors import DecodeError
from x86lift.image import DataDirectory, Image, Perm, Section


TEXT = 0x401000
DATA = 0x402000


def reg(name, size=4):
    return Operand(type="reg", size=size, reg=name)


def imm(value, size=4):
    return Operand(type="imm", size=size, imm=value)


def mem(base=None, index=None, scale=1, disp=0, size=4, segment=None):
    return Operand(type="mem", size=size, mem_base=base, mem_index=index,
                   mem_scale=scale, mem_disp=disp, mem_segment=segment)


def insn(address, size, mnemonic, *operands):
    op_str = ", ".join(repr(op) for op in operands)
    return Instruction(address=address, size=size, mnemonic=mnemonic,
                       op_str=op_str, bytes=b"\x90" * size, operands=list(operands))


INSN_SIZE = 4


def at(k, start=TEXT):
    """Address of the k-th instruction of an assembled program."""
    return start + INSN_SIZE * k


def assemble(items, start=TEXT):
    """(mnemonic, *operands) tuples laid out INSN_SIZE bytes apart."""
    return [insn(at(k, start), INSN_SIZE, mnemonic, *ops)
            for k, (mnemonic, *ops) in enumerate(items)]


class TableDecoder:
    """decode(data, va) backed by a prepared address -> Instruction table."""

    def __init__(self, program):
        self.table = {i.address: i for i in program}
        self.calls = []

    def __call__(self, data, va):
        self.calls.append(va)
        found = self.table.get(va)
        if found is None:
            raise DecodeError(va, "invalid instruction bytes")
        if found.size > len(data):
            raise DecodeError(va, "truncated instruction")
        return found


def make_image(text_size=0x100, text_bytes=None):
    text = text_bytes if text_bytes is not None else b"\x90" * text_size
    return Image(
        path="test.exe",
        entry=TEXT,
        image_base=0x400000,
        sections=[
            Section(".text", TEXT, text, 0x400, len(text), Perm.R | Perm.X),
            Section(".data", DATA, b"Hi!\x00" + b"\x00" * 12, 0x600, 0x40, Perm.R | Perm.W),
        ],
        data_dirs=[DataDirectory(0, 0), DataDirectory(0x2000, 0x8)],
    )


def make_builder(program, funcs, blocks, data=(), image=None):
    image = image or make_image()
    chunks = classify_chunks(blocks, data)
    return FunctionBuilder(image, TableDecoder(program), funcs, blocks, chunks)


@pytest.fixture
def image():
    return make_image()


# --- JIT ---

class MachineState:
    """ctypes storage for the lifter's external register and flag globals."""

    REGS = ('eax', 'ecx', 'edx', 'ebx', 'esp', 'ebp', 'esi', 'edi', 'fs_base', 'gs_base')
    FLAGS = ('cf', 'pf', 'zf', 'sf', 'of', 'df')

    def __init__(self, llvm):
        self.cells = {}
        for name in self.REGS:
            self.cells[name] = ctypes.c_uint32(0)
        for name in self.FLAGS:
            self.cells[name] = ctypes.c_uint8(0)
        for name, cell in self.cells.items():
            llvm.add_symbol(name, ctypes.addressof(cell))

    def reset(self):
        for cell in self.cells.values():
            cell.value = 0

    def __getitem__(self, name):
        return self.cells[name].value

    def __setitem__(self, name, value):
        self.cells[name].value = value


@pytest.fixture(scope="session")
def llvm():
    binding = pytest.importorskip("llvmlite.binding")
    binding.initialize_native_target()
    binding.initialize_native_asmprinter()
    return binding


@pytest.fixture(scope="session")
def machine(llvm):
    return MachineState(llvm)


@pytest.fixture
def state(machine):
    machine.reset()
    return machine


@pytest.fixture
def jit(llvm):
    """Compile IR text for the host; returns the execution engine."""
    engines = []

    def compile_ir(text):
        target = llvm.Target.from_default_triple()
        tm = target.create_target_machine()
        mod = llvm.parse_assembly(text)
        mod.triple = llvm.get_process_triple()
        mod.verify()
        engine = llvm.create_mcjit_compiler(mod, tm)
        engine.finalize_object()
        engines.append(engine)
        return engine

    yield compile_ir
    engines.clear()


def run_void(engine, name):
    ctypes.CFUNCTYPE(None)(engine.get_function_address(name))()


MAP_PRIVATE = 0x02
MAP_ANONYMOUS = 0x20
MAP_32BIT = 0x40
PAGE_SIZE = 0x1000


@pytest.fixture
def low_memory():
    """A read/write page below 2GB, addressable by lifted 32-bit code."""
    if not sys.platform.startswith("linux") or platform.machine() != "x86_64":
        pytest.skip("MAP_32BIT needs Linux on x86_64")
    libc = ctypes.CDLL(None, use_errno=True)
    libc.mmap.restype = ctypes.c_void_p
    libc.mmap.argtypes = [ctypes.c_void_p, ctypes.c_size_t, ctypes.c_int,
                          ctypes.c_int, ctypes.c_int, ctypes.c_long]
    libc.munmap.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
    page = libc.mmap(None, PAGE_SIZE, 3, MAP_PRIVATE | MAP_ANONYMOUS | MAP_32BIT, -1, 0)
    if page is None or page == ctypes.c_void_p(-1).value or page >= 1 << 32:
        pytest.skip("no low page available")
    yield page
    libc.munmap(page, PAGE_SIZE)


def dword_at(address):
    return ctypes.c_uint32.from_address(address).value
