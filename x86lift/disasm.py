"""
Function and basic block reconstruction for x86-32 code.

Walks the decoded instruction stream of a function, starting at its entry,
and splits it into basic blocks at control transfers and at the supplied
basic block addresses. A call ends its block only when its return address
starts another one; otherwise decoding continues after it. Edges into another
function's entry are tail calls. The decoder is an injected pure function
decode(data, address) -> Instruction (see decoder.Decoder).
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .chunks import Chunk, classify_chunks, next_chunk
from .errors import DecodeError
from .image import Image


# Conditional jump mnemonics
COND_JUMPS = {
    'je', 'jne', 'jz', 'jnz', 'ja', 'jae', 'jb', 'jbe',
    'jg', 'jge', 'jl', 'jle', 'js', 'jns', 'jo', 'jno',
    'jp', 'jnp', 'jcxz', 'jecxz',
    'loop', 'loope', 'loopne',
}

# Unconditional jump
UNCOND_JUMPS = {'jmp'}

# Call instructions
CALLS = {'call'}

# Return instructions
RETS = {'ret', 'retn', 'retf'}

# Instructions that never continue to the next instruction
TRAPS = {'int3', 'ud2', 'hlt'}

# Longest valid x86 instruction
MAX_INSN_LEN = 15


@dataclass
class Operand:
    """Decoded instruction operand."""
    type: str  # "reg", "imm", "mem"
    size: int = 0  # operand size in bytes
    # For reg:
    reg: Optional[str] = None
    # For imm:
    imm: Optional[int] = None
    # For mem: segment:[base + index*scale + disp]
    mem_base: Optional[str] = None
    mem_index: Optional[str] = None
    mem_scale: int = 1
    mem_disp: int = 0
    mem_segment: Optional[str] = None

    def __repr__(self):
        if self.type == "reg":
            return self.reg
        if self.type == "imm":
            return f"0x{self.imm & 0xFFFFFFFF:X}"
        parts = []
        if self.mem_base:
            parts.append(self.mem_base)
        if self.mem_index:
            parts.append(f"{self.mem_index}*{self.mem_scale}")
        if self.mem_disp or not parts:
            parts.append(f"0x{self.mem_disp & 0xFFFFFFFF:X}")
        seg = f"{self.mem_segment}:" if self.mem_segment else ""
        return f"{seg}[{' + '.join(parts)}]"


@dataclass
class Instruction:
    address: int
    size: int
    mnemonic: str
    op_str: str = ""
    bytes: bytes = b""
    operands: List[Operand] = field(default_factory=list)

    @property
    def is_call(self) -> bool:
        return self.mnemonic in CALLS

    @property
    def is_ret(self) -> bool:
        return self.mnemonic in RETS

    @property
    def is_cond_jump(self) -> bool:
        return self.mnemonic in COND_JUMPS

    @property
    def is_uncond_jump(self) -> bool:
        return self.mnemonic in UNCOND_JUMPS

    @property
    def is_jump(self) -> bool:
        return self.is_cond_jump or self.is_uncond_jump

    @property
    def is_trap(self) -> bool:
        return self.mnemonic in TRAPS

    @property
    def is_terminator(self) -> bool:
        """Control transfer ending a basic block."""
        return self.is_ret or self.is_jump or self.is_call or self.is_trap

    @property
    def end_address(self) -> int:
        return self.address + self.size

    def get_branch_target(self) -> Optional[int]:
        """Get the immediate branch/call target, or None for indirect."""
        if self.operands:
            op = self.operands[0]
            if op.type == "imm":
                return op.imm & 0xFFFFFFFF
        return None

    def __repr__(self):
        return f"0x{self.address:08X}: {self.mnemonic} {self.op_str}".rstrip()


@dataclass
class BasicBlock:
    address: int
    instructions: List[Instruction] = field(default_factory=list)  # non-terminating; may hold calls
    term: Optional[Instruction] = None  # None: implicit fallthrough
    successors: List[int] = field(default_factory=list)

    @property
    def has_dummy_term(self) -> bool:
        return self.term is None

    @property
    def end(self) -> int:
        """Address past the last instruction."""
        if self.term is not None:
            return self.term.end_address
        if self.instructions:
            return self.instructions[-1].end_address
        return self.address

    def all_instructions(self) -> List[Instruction]:
        if self.term is None:
            return list(self.instructions)
        return self.instructions + [self.term]


@dataclass
class Function:
    address: int
    blocks: Dict[int, BasicBlock] = field(default_factory=dict)  # addr -> BasicBlock

    @property
    def name(self) -> str:
        return func_name(self.address)

    @property
    def num_instructions(self) -> int:
        return sum(len(b.all_instructions()) for b in self.blocks.values())


def func_name(addr: int) -> str:
    return f"sub_{addr:06X}"


class FunctionBuilder:
    def __init__(self, image: Image, decode: Callable[[bytes, int], Instruction],
                 func_addrs: Iterable[int], block_addrs: Iterable[int],
                 chunks: Optional[List[Chunk]] = None):
        """
        image: loaded executable image
        decode: decode(data, va) -> Instruction, raising DecodeError
        func_addrs/block_addrs: supplied function and basic block addresses
        chunks: chunk sequence from chunks.classify_chunks
        """
        self.image = image
        self.decode = decode
        self.func_addrs = frozenset(func_addrs)
        self.block_addrs = frozenset(block_addrs)
        if chunks is None:
            chunks = classify_chunks(self.block_addrs, ())
        self.chunks = chunks
        self._insns: Dict[int, Instruction] = {}

    def decode_insn(self, va: int) -> Instruction:
        """Decode the instruction at va, limited to its chunk."""
        insn = self._insns.get(va)
        if insn is not None:
            return insn

        sect = self.image.section_at(va)
        if sect is None or not sect.is_code:
            raise DecodeError(va, "address not in an executable section")
        limit = sect.end
        nxt = next_chunk(self.chunks, va)
        if nxt is not None and nxt.addr < limit:
            limit = nxt.addr
        if va >= limit:
            raise DecodeError(va, "no instruction bytes at address")

        data = self.image.read(va, min(MAX_INSN_LEN, limit - va))
        insn = self.decode(data, va)
        if insn.end_address > limit:
            raise DecodeError(va, f"instruction runs past chunk boundary 0x{limit:08X}")
        self._insns[va] = insn
        return insn

    def is_boundary(self, va: int) -> bool:
        """va starts a known basic block or a function."""
        return va in self.block_addrs or va in self.func_addrs

    def is_foreign_entry(self, func: Function, va: int) -> bool:
        """va is the entry of a function other than func; edges there are tail calls."""
        return va != func.address and va in self.func_addrs

    def decode_function(self, address: int) -> Function:
        """
        Decode the function at address, following control flow edges
        between the known basic blocks. Each block is decoded once. Edges
        into another function's entry are kept as successors but not
        followed.
        """
        if address not in self.block_addrs:
            raise DecodeError(address, "function entry is not a known basic block")

        func = Function(address=address)
        blocks = {}
        work = deque([address])
        visited = {address}

        while work:
            addr = work.popleft()
            block = self.decode_block(func, addr)
            blocks[addr] = block
            for succ in block.successors:
                if succ not in visited and not self.is_foreign_entry(func, succ):
                    visited.add(succ)
                    work.append(succ)

        func.blocks = dict(sorted(blocks.items()))
        return func

    def decode_block(self, func: Function, addr: int) -> BasicBlock:
        block = BasicBlock(address=addr)
        va = addr
        while True:
            insn = self.decode_insn(va)
            # A call ends its block only when the return address starts one
            if insn.is_terminator and (not insn.is_call or self.is_boundary(insn.end_address)):
                block.term = insn
                block.successors = self._successors(func, insn)
                return block

            block.instructions.append(insn)
            va = insn.end_address
            # Implicit fallthrough into the next known block
            if self.is_boundary(va):
                block.successors = [va]
                return block

    def _successors(self, func: Function, insn: Instruction) -> List[int]:
        if insn.is_ret or insn.is_trap:
            return []

        if insn.is_call:
            return [insn.end_address]

        target = insn.get_branch_target()
        if insn.is_uncond_jump:
            if target is None:
                return []  # indirect jump
            if self.is_foreign_entry(func, target):
                return []  # tail call
            succs = [target]
        else:
            if target is None:
                raise DecodeError(insn.address, f"indirect conditional branch '{insn.mnemonic}'")
            succs = [target, insn.end_address]

        for succ in succs:
            if not self.is_boundary(succ):
                raise DecodeError(insn.address, f"branch target 0x{succ:08X} is not a known basic block")
        return succs
