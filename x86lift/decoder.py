"""
Capstone-backed x86-32 instruction decoder.

Decoder.decode(data, address) is the pure decode function consumed by
disasm.FunctionBuilder: it converts one Capstone instruction into the
Instruction/Operand records of disasm.py.
"""

from capstone import Cs, CS_ARCH_X86, CS_MODE_32, CsError
from capstone.x86 import X86_OP_IMM, X86_OP_MEM, X86_OP_REG

from .disasm import Instruction, Operand
from .errors import DecodeError


class Decoder:
    """Capstone-based x86-32 decoder."""

    def __init__(self):
        self._cs = Cs(CS_ARCH_X86, CS_MODE_32)
        self._cs.detail = True
        self._reg_names = {}

    def reg_name(self, reg_id: int):
        """Capstone register ID -> lower-case name, None for no register."""
        if not reg_id:
            return None
        name = self._reg_names.get(reg_id)
        if name is None:
            name = self._cs.reg_name(reg_id)
            if name is None:
                raise DecodeError(0, f"unknown register id {reg_id}")
            self._reg_names[reg_id] = name
        return name

    def _operand(self, cs_op) -> Operand:
        """Convert a Capstone operand to an Operand."""
        if cs_op.type == X86_OP_IMM:
            return Operand(type="imm", size=cs_op.size, imm=cs_op.imm)
        if cs_op.type == X86_OP_MEM:
            mem = cs_op.mem
            return Operand(
                type="mem",
                size=cs_op.size,
                mem_base=self.reg_name(mem.base),
                mem_index=self.reg_name(mem.index),
                mem_scale=mem.scale,
                mem_disp=mem.disp,
                mem_segment=self.reg_name(mem.segment),
            )
        if cs_op.type == X86_OP_REG:
            return Operand(type="reg", size=cs_op.size, reg=self.reg_name(cs_op.reg))
        raise DecodeError(0, f"unknown operand type {cs_op.type}")

    def decode(self, data: bytes, address: int) -> Instruction:
        """Decode the single instruction at the start of data."""
        if not data:
            raise DecodeError(address, "no bytes to decode")
        try:
            cs_insn = next(self._cs.disasm(data, address, count=1), None)
        except CsError as e:
            raise DecodeError(address, f"capstone: {e}") from e
        if cs_insn is None:
            raise DecodeError(address, f"invalid instruction bytes {data[:8].hex()}")

        try:
            operands = [self._operand(op) for op in cs_insn.operands]
        except DecodeError as e:
            raise DecodeError(address, e.reason) from e

        return Instruction(
            address=cs_insn.address,
            size=cs_insn.size,
            mnemonic=cs_insn.mnemonic,
            op_str=cs_insn.op_str,
            bytes=bytes(cs_insn.bytes),
            operands=operands,
        )


def make_decoder():
    """Return a decode(data, address) function backed by a fresh Decoder."""
    return Decoder().decode
