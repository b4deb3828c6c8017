"""
x86-32 to LLVM IR lifter.

Each function becomes its own llvmlite module holding one `void sub_XXXXXX()`
definition. Machine state follows a global register model: the eight
general purpose registers, the status flags and the fs/gs segment bases are
external globals shared by all lifted functions, memory is the flat 32-bit
address space reached through inttoptr, and the x87 register stack is
per-function state (see fpu.py, x87.py).

The emulated stack is explicit: push/pop move esp and access memory, call
pushes the return address before calling the lifted callee and ret pops it.
"""

from typing import Dict, Iterable, Optional, Tuple

from llvmlite import ir

from .disasm import BasicBlock, Function, Instruction, Operand, func_name
from .errors import DecodeError, UnsupportedOpcodeError
from .fpu import FPUStack
from .irtypes import I1, I8, I16, I32, I64, VOID, int_type
from .x87 import X87Mixin, X87_MNEMONICS


DEFAULT_TRIPLE = "i386-pc-windows-msvc"

FNTY = ir.FunctionType(VOID, [])

MASK32 = 0xFFFFFFFF

GPRS = ('eax', 'ecx', 'edx', 'ebx', 'esp', 'ebp', 'esi', 'edi')

# sub-register -> (parent, bit offset, width)
SUBREGS = {
    'ax': ('eax', 0, 16), 'cx': ('ecx', 0, 16), 'dx': ('edx', 0, 16), 'bx': ('ebx', 0, 16),
    'sp': ('esp', 0, 16), 'bp': ('ebp', 0, 16), 'si': ('esi', 0, 16), 'di': ('edi', 0, 16),
    'al': ('eax', 0, 8), 'cl': ('ecx', 0, 8), 'dl': ('edx', 0, 8), 'bl': ('ebx', 0, 8),
    'ah': ('eax', 8, 8), 'ch': ('ecx', 8, 8), 'dh': ('edx', 8, 8), 'bh': ('ebx', 8, 8),
}

# Segment overrides with a non-zero base in a flat 32-bit process
SEGMENT_BASES = {'fs': 'fs_base', 'gs': 'gs_base'}

# Condition suffix aliases -> canonical suffix
COND_ALIASES = {
    'z': 'e', 'nz': 'ne', 'c': 'b', 'nae': 'b', 'nb': 'ae', 'nc': 'ae',
    'na': 'be', 'nbe': 'a', 'nge': 'l', 'nl': 'ge', 'ng': 'le', 'nle': 'g',
    'pe': 'p', 'po': 'np',
}
CONDITIONS = {'e', 'ne', 'b', 'ae', 'be', 'a', 'l', 'ge', 'le', 'g',
              's', 'ns', 'o', 'no', 'p', 'np'}

SETCC = {f'set{cc}' for cc in CONDITIONS | set(COND_ALIASES)}
CMOVCC = {f'cmov{cc}' for cc in CONDITIONS | set(COND_ALIASES)}


def reg_size(name: str) -> int:
    """Size in bytes of a general purpose (sub-)register."""
    if name in GPRS:
        return 4
    if name in SUBREGS:
        return SUBREGS[name][2] // 8
    raise KeyError(name)


def operand_size(op: Operand) -> int:
    if op.type == "reg" and (op.reg in GPRS or op.reg in SUBREGS):
        return reg_size(op.reg)
    return op.size


def import_name(dll: str, name: str) -> str:
    return f"{dll}!{name}"


class Lifter:
    """Lifts decoded functions to LLVM IR modules."""

    def __init__(self, iat_map: dict = None, func_addrs: Iterable[int] = (),
                 triple: str = DEFAULT_TRIPLE):
        """
        iat_map: IAT slot VA -> (dll, func_name) for import resolution
        func_addrs: known function entry points (direct jmp targets among
                    them are tail calls)
        """
        self.iat_map = iat_map or {}
        self.func_addrs = frozenset(func_addrs)
        self.triple = triple

    def lift_function(self, func: Function) -> ir.Module:
        """
        Lift an entire function into a fresh module. Raises
        UnsupportedOpcodeError or DecodeError; the partially built module is
        dropped with the exception.
        """
        module = ir.Module(name=func.name)
        module.triple = self.triple
        FunctionLifter(self, module, func).lift()
        return module


class FunctionLifter(X87Mixin):
    """
    Per-function lifting state: the IRBuilder is the single cursor, always
    positioned at the end of the block being appended to.
    """

    def __init__(self, lifter: Lifter, module: ir.Module, func: Function):
        self.lifter = lifter
        self.module = module
        self.func = func
        self.fn = ir.Function(module, FNTY, name=func.name)

        entry = self.fn.append_basic_block("entry")
        self.blocks: Dict[int, ir.Block] = {
            addr: self.fn.append_basic_block(f"block_{addr:06X}")
            for addr in func.blocks
        }
        self.builder = ir.IRBuilder(entry)
        self.fpu = FPUStack.allocate(self.builder)
        self.builder.branch(self.blocks[func.address])
        self.tails: Dict[int, ir.Block] = {}
        self.insn: Optional[Instruction] = None

    def lift(self):
        for addr, block in self.func.blocks.items():
            self.builder.position_at_end(self.blocks[addr])
            self.lift_basic_block(block)

    def lift_basic_block(self, block: BasicBlock):
        for insn in block.instructions:
            self.lift_instruction(insn)
        if block.term is None:
            self.builder.branch(self._block(block.successors[0], block.end))
            return
        self.lift_instruction(block.term)
        if block.term.is_call:
            # Resume at the block starting at the return address
            self.builder.branch(self._block(block.successors[0], block.term.address))

    # --- State access ---

    def _global(self, name: str, typ: ir.Type) -> ir.GlobalVariable:
        gv = self.module.globals.get(name)
        if gv is None:
            gv = ir.GlobalVariable(self.module, typ, name)
        return gv

    def _declare(self, name: str) -> ir.Function:
        fn = self.module.globals.get(name)
        if fn is None:
            fn = ir.Function(self.module, FNTY, name=name)
        return fn

    def _intrinsic(self, name: str, typ: ir.Type, nargs: int = 1) -> ir.Function:
        fnty = ir.FunctionType(typ, [typ] * nargs)
        return self.module.declare_intrinsic(name, [typ], fnty=fnty)

    def _block(self, addr: int, source: int) -> ir.Block:
        """Block for a control flow edge; edges into other functions get a tail call stub."""
        block = self.blocks.get(addr)
        if block is not None:
            return block
        if addr != self.func.address and addr in self.lifter.func_addrs:
            return self._tail_block(addr)
        raise DecodeError(source, f"branch target 0x{addr:08X} is not a block of {self.func.name}")

    def _tail_block(self, addr: int) -> ir.Block:
        block = self.tails.get(addr)
        if block is None:
            block = self.fn.append_basic_block(f"tail_{addr:06X}")
            with self.builder.goto_block(block):
                self.builder.call(self._declare(func_name(addr)), [])
                self.builder.ret_void()
            self.tails[addr] = block
        return block

    def _unsupported(self, what: Optional[str] = None):
        insn = self.insn
        raise UnsupportedOpcodeError(what or insn.mnemonic, insn.address)

    def read_reg(self, name: str) -> ir.Value:
        b = self.builder
        if name in GPRS:
            return b.load(self._global(name, I32), typ=I32)
        if name in SUBREGS:
            parent, shift, width = SUBREGS[name]
            value = b.load(self._global(parent, I32), typ=I32)
            if shift:
                value = b.lshr(value, ir.Constant(I32, shift))
            return b.trunc(value, ir.IntType(width))
        self._unsupported(f"{self.insn.mnemonic} {name}")

    def write_reg(self, name: str, value: ir.Value):
        b = self.builder
        if name in GPRS:
            b.store(value, self._global(name, I32))
            return
        if name in SUBREGS:
            parent, shift, width = SUBREGS[name]
            cell = self._global(parent, I32)
            keep = ~(((1 << width) - 1) << shift) & MASK32
            old = b.and_(b.load(cell, typ=I32), ir.Constant(I32, keep))
            new = b.zext(value, I32)
            if shift:
                new = b.shl(new, ir.Constant(I32, shift))
            b.store(b.or_(old, new), cell)
            return
        self._unsupported(f"{self.insn.mnemonic} {name}")

    def flag(self, name: str) -> ir.Value:
        return self.builder.load(self._global(name, I1), typ=I1)

    def set_flag(self, name: str, value, keep: Optional[ir.Value] = None):
        """Store a flag; where keep is true at runtime the old value stays."""
        if not isinstance(value, ir.Value):
            value = ir.Constant(I1, int(bool(value)))
        if keep is not None:
            value = self.builder.select(keep, self.flag(name), value)
        self.builder.store(value, self._global(name, I1))

    # --- Operand resolution ---

    def mem_address(self, op: Operand, segment: bool = True) -> ir.Value:
        """Effective address of a memory operand as i32, without dereference."""
        b = self.builder
        addr = None
        if op.mem_base:
            addr = self._as_i32(self.read_reg(op.mem_base))
        if op.mem_index:
            index = self._as_i32(self.read_reg(op.mem_index))
            if op.mem_scale != 1:
                index = b.mul(index, ir.Constant(I32, op.mem_scale))
            addr = index if addr is None else b.add(addr, index)
        disp = ir.Constant(I32, op.mem_disp & MASK32)
        if addr is None:
            addr = disp
        elif op.mem_disp:
            addr = b.add(addr, disp)
        if segment and op.mem_segment in SEGMENT_BASES:
            base = b.load(self._global(SEGMENT_BASES[op.mem_segment], I32), typ=I32)
            addr = b.add(base, addr)
        return addr

    def _as_i32(self, value: ir.Value) -> ir.Value:
        if value.type.width < 32:
            return self.builder.zext(value, I32)
        return value

    def mem_ptr(self, addr: ir.Value, typ: ir.Type) -> ir.Value:
        return self.builder.inttoptr(addr, typ.as_pointer())

    def load_mem(self, addr: ir.Value, typ: ir.Type) -> ir.Value:
        return self.builder.load(self.mem_ptr(addr, typ), typ=typ)

    def store_mem(self, addr: ir.Value, value: ir.Value):
        self.builder.store(value, self.mem_ptr(addr, value.type))

    def read_operand(self, op: Operand, size: Optional[int] = None) -> ir.Value:
        """
        Read an integer operand. size overrides the operand size, for
        immediates whose encoded size differs from the destination.
        """
        if op.type == "reg":
            return self.read_reg(op.reg)
        if op.type == "imm":
            size = size or op.size or 4
            return ir.Constant(int_type(size), op.imm & ((1 << (size * 8)) - 1))
        if op.type == "mem":
            return self.load_mem(self.mem_address(op), int_type(size or op.size))
        raise DecodeError(self.insn.address, f"bad operand type {op.type!r}")

    def write_operand(self, op: Operand, value: ir.Value):
        if op.type == "reg":
            self.write_reg(op.reg, value)
        elif op.type == "mem":
            self.store_mem(self.mem_address(op), value)
        else:
            raise DecodeError(self.insn.address, f"cannot write to {op!r}")

    # --- Stack ---

    def push_value(self, value: ir.Value):
        b = self.builder
        esp = b.sub(self.read_reg('esp'), ir.Constant(I32, value.type.width // 8))
        self.write_reg('esp', esp)
        self.store_mem(esp, value)

    def pop_value(self, typ: ir.IntType = I32) -> ir.Value:
        b = self.builder
        esp = self.read_reg('esp')
        value = self.load_mem(esp, typ)
        self.write_reg('esp', b.add(esp, ir.Constant(I32, typ.width // 8)))
        return value

    # --- Flags ---

    def _is_negative(self, value: ir.Value) -> ir.Value:
        return self.builder.icmp_signed('<', value, ir.Constant(value.type, 0))

    def _parity(self, value: ir.Value) -> ir.Value:
        """PF: even number of set bits in the low byte."""
        b = self.builder
        low = value if value.type.width == 8 else b.trunc(value, I8)
        bits = b.and_(b.ctpop(low), ir.Constant(I8, 1))
        return b.icmp_unsigned('==', bits, ir.Constant(I8, 0))

    def set_result_flags(self, result: ir.Value, keep: Optional[ir.Value] = None):
        """ZF, SF and PF from a result."""
        b = self.builder
        self.set_flag('zf', b.icmp_unsigned('==', result, ir.Constant(result.type, 0)), keep)
        self.set_flag('sf', self._is_negative(result), keep)
        self.set_flag('pf', self._parity(result), keep)

    def set_logic_flags(self, result: ir.Value):
        self.set_flag('cf', False)
        self.set_flag('of', False)
        self.set_result_flags(result)

    def _carry_out(self, lhs, rhs, carry, subtract):
        """CF of lhs +/- rhs +/- carry, computed one bit wider."""
        b = self.builder
        width = lhs.type.width
        wide = ir.IntType(width + 1)
        op = b.sub if subtract else b.add
        total = op(b.zext(lhs, wide), b.zext(rhs, wide))
        if carry is not None:
            total = op(total, b.zext(carry, wide))
        return b.trunc(b.lshr(total, ir.Constant(wide, width)), I1)

    def set_add_flags(self, lhs, rhs, result, carry=None, with_cf=True):
        b = self.builder
        if with_cf:
            self.set_flag('cf', self._carry_out(lhs, rhs, carry, subtract=False))
        overflow = b.and_(b.xor(lhs, result), b.xor(rhs, result))
        self.set_flag('of', self._is_negative(overflow))
        self.set_result_flags(result)

    def set_sub_flags(self, lhs, rhs, result, borrow=None, with_cf=True):
        b = self.builder
        if with_cf:
            self.set_flag('cf', self._carry_out(lhs, rhs, borrow, subtract=True))
        overflow = b.and_(b.xor(lhs, rhs), b.xor(lhs, result))
        self.set_flag('of', self._is_negative(overflow))
        self.set_result_flags(result)

    def condition(self, cc: str) -> ir.Value:
        """i1 value of a condition code suffix (e, ne, b, ...)."""
        b = self.builder
        cc = COND_ALIASES.get(cc, cc)
        if cc not in CONDITIONS:
            self._unsupported()
        negate = cc in ('ne', 'ae', 'a', 'ge', 'g', 'ns', 'no', 'np')
        base = {'ne': 'e', 'ae': 'b', 'a': 'be', 'ge': 'l', 'g': 'le',
                'ns': 's', 'no': 'o', 'np': 'p'}.get(cc, cc)

        if base == 'e':
            value = self.flag('zf')
        elif base == 'b':
            value = self.flag('cf')
        elif base == 'be':
            value = b.or_(self.flag('cf'), self.flag('zf'))
        elif base == 'l':
            value = b.xor(self.flag('sf'), self.flag('of'))
        elif base == 'le':
            value = b.or_(self.flag('zf'), b.xor(self.flag('sf'), self.flag('of')))
        elif base == 's':
            value = self.flag('sf')
        elif base == 'o':
            value = self.flag('of')
        else:
            value = self.flag('pf')
        return b.not_(value) if negate else value

    def _trap_if(self, cond: ir.Value):
        """Continue in a new block; cond true traps (#DE and friends)."""
        b = self.builder
        trap_bb = self.fn.append_basic_block("trap")
        cont_bb = self.fn.append_basic_block("cont")
        b.cbranch(cond, trap_bb, cont_bb)
        b.position_at_end(trap_bb)
        self._emit_trap()
        b.position_at_end(cont_bb)

    def _emit_trap(self):
        trap = self.module.declare_intrinsic('llvm.trap', fnty=ir.FunctionType(VOID, []))
        self.builder.call(trap, [])
        self.builder.unreachable()

    # --- Dispatch ---

    def lift_instruction(self, insn: Instruction):
        """
        Append the IR for one instruction at the builder position.
        Control transfers terminate the current block.
        """
        self.insn = insn
        m = insn.mnemonic
        ops = insn.operands
        nops = len(ops)

        if m == "nop":
            return

        # --- Data movement ---
        if m == "mov":
            return self._lift_mov(ops)
        if m in ("movzx", "movsx"):
            return self._lift_movx(ops, m)
        if m == "lea":
            return self._lift_lea(ops)
        if m == "xchg":
            return self._lift_xchg(ops)

        # --- Stack ---
        if m == "push":
            return self.push_value(self.read_operand(ops[0], operand_size(ops[0]) or 4))
        if m == "pop":
            return self.write_operand(ops[0], self.pop_value(int_type(operand_size(ops[0]))))
        if m == "pushal":
            return self._lift_pushal()
        if m == "popal":
            return self._lift_popal()
        if m == "leave":
            self.write_reg('esp', self.read_reg('ebp'))
            return self.write_reg('ebp', self.pop_value())

        # --- Arithmetic ---
        if m in ("add", "sub", "adc", "sbb", "cmp"):
            return self._lift_addsub(ops, m)
        if m in ("and", "or", "xor", "test"):
            return self._lift_logic(ops, m)
        if m in ("inc", "dec"):
            return self._lift_inc_dec(ops, m)
        if m == "neg":
            return self._lift_neg(ops)
        if m == "not":
            return self.write_operand(ops[0], self.builder.not_(self.read_operand(ops[0])))
        if m == "imul" and nops > 1:
            return self._lift_imul(ops)
        if m in ("mul", "imul"):
            return self._lift_mul(ops, m)
        if m in ("div", "idiv"):
            return self._lift_div(ops, m)
        if m in ("shl", "sal", "shr", "sar"):
            return self._lift_shift(ops, m)
        if m in ("rol", "ror"):
            return self._lift_rotate(ops, m)

        # --- Conversions ---
        if m in ("cdq", "cwd"):
            src = 'eax' if m == "cdq" else 'ax'
            value = self.read_reg(src)
            shift = ir.Constant(value.type, value.type.width - 1)
            return self.write_reg('edx' if m == "cdq" else 'dx', self.builder.ashr(value, shift))
        if m == "cwde":
            return self.write_reg('eax', self.builder.sext(self.read_reg('ax'), I32))
        if m == "cbw":
            return self.write_reg('ax', self.builder.sext(self.read_reg('al'), I16))

        # --- Flags ---
        if m == "sahf":
            return self._lift_sahf()
        if m == "lahf":
            return self._lift_lahf()
        if m in ("clc", "stc"):
            return self.set_flag('cf', m == "stc")
        if m == "cmc":
            return self.set_flag('cf', self.builder.not_(self.flag('cf')))
        if m in ("cld", "std"):
            return self.set_flag('df', m == "std")
        if m in SETCC:
            value = self.builder.zext(self.condition(m[3:]), I8)
            return self.write_operand(ops[0], value)
        if m in CMOVCC:
            return self._lift_cmov(ops, m[4:])

        # --- Control flow ---
        if m == "call":
            return self._lift_call(insn, ops)
        if m in ("ret", "retn"):
            return self._lift_ret(ops)
        if m == "jmp":
            return self._lift_jmp(insn, ops)
        if insn.is_cond_jump:
            return self._lift_jcc(insn, m)
        if insn.is_trap:
            return self._emit_trap()

        # --- x87 ---
        if m in X87_MNEMONICS:
            return self.lift_x87(insn, m, ops)

        self._unsupported()

    # --- Data movement ---

    def _lift_mov(self, ops):
        size = operand_size(ops[0])
        self.write_operand(ops[0], self.read_operand(ops[1], size))

    def _lift_movx(self, ops, m):
        b = self.builder
        typ = int_type(operand_size(ops[0]))
        value = self.read_operand(ops[1])
        value = b.zext(value, typ) if m == "movzx" else b.sext(value, typ)
        self.write_operand(ops[0], value)

    def _lift_lea(self, ops):
        addr = self.mem_address(ops[1], segment=False)
        if operand_size(ops[0]) == 2:
            addr = self.builder.trunc(addr, I16)
        self.write_operand(ops[0], addr)

    def _lift_xchg(self, ops):
        a = self.read_operand(ops[0])
        c = self.read_operand(ops[1])
        self.write_operand(ops[0], c)
        self.write_operand(ops[1], a)

    def _lift_pushal(self):
        esp = self.read_reg('esp')
        for reg in GPRS:
            self.push_value(esp if reg == 'esp' else self.read_reg(reg))

    def _lift_popal(self):
        for reg in reversed(GPRS):
            value = self.pop_value()
            if reg != 'esp':
                self.write_reg(reg, value)

    # --- Arithmetic ---

    def _binary_operands(self, ops):
        size = operand_size(ops[0])
        return self.read_operand(ops[0]), self.read_operand(ops[1], size)

    def _lift_addsub(self, ops, m):
        b = self.builder
        lhs, rhs = self._binary_operands(ops)
        carry = None
        if m in ("adc", "sbb"):
            carry = self.flag('cf')
        if m in ("add", "adc"):
            result = b.add(lhs, rhs)
            if carry is not None:
                result = b.add(result, b.zext(carry, result.type))
            self.set_add_flags(lhs, rhs, result, carry)
        else:
            result = b.sub(lhs, rhs)
            if carry is not None:
                result = b.sub(result, b.zext(carry, result.type))
            self.set_sub_flags(lhs, rhs, result, carry)
        if m != "cmp":
            self.write_operand(ops[0], result)

    def _lift_logic(self, ops, m):
        b = self.builder
        lhs, rhs = self._binary_operands(ops)
        if m in ("and", "test"):
            result = b.and_(lhs, rhs)
        elif m == "or":
            result = b.or_(lhs, rhs)
        else:
            result = b.xor(lhs, rhs)
        self.set_logic_flags(result)
        if m != "test":
            self.write_operand(ops[0], result)

    def _lift_inc_dec(self, ops, m):
        b = self.builder
        value = self.read_operand(ops[0])
        one = ir.Constant(value.type, 1)
        if m == "inc":
            result = b.add(value, one)
            self.set_add_flags(value, one, result, with_cf=False)
        else:
            result = b.sub(value, one)
            self.set_sub_flags(value, one, result, with_cf=False)
        self.write_operand(ops[0], result)

    def _lift_neg(self, ops):
        b = self.builder
        value = self.read_operand(ops[0])
        zero = ir.Constant(value.type, 0)
        result = b.sub(zero, value)
        self.set_sub_flags(zero, value, result, with_cf=False)
        self.set_flag('cf', b.icmp_unsigned('!=', value, zero))
        self.write_operand(ops[0], result)

    def _lift_imul(self, ops):
        """Two and three operand imul: truncated signed product."""
        b = self.builder
        size = operand_size(ops[0])
        typ = int_type(size)
        wide = int_type(size * 2)
        if len(ops) == 2:
            lhs, rhs = self._binary_operands(ops)
        else:
            lhs = self.read_operand(ops[1], size)
            rhs = self.read_operand(ops[2], size)
        full = b.mul(b.sext(lhs, wide), b.sext(rhs, wide))
        result = b.trunc(full, typ)
        overflow = b.icmp_unsigned('!=', b.sext(result, wide), full)
        self.set_flag('cf', overflow)
        self.set_flag('of', overflow)
        self.write_operand(ops[0], result)

    # Implicit accumulator registers per operand size: (low in, low out, high out)
    _ACC = {1: ('al', 'al', 'ah'), 2: ('ax', 'ax', 'dx'), 4: ('eax', 'eax', 'edx')}

    def _lift_mul(self, ops, m):
        """One operand mul/imul: double-width product into (e)dx:(e)ax or ax."""
        b = self.builder
        size = operand_size(ops[0])
        acc, low_reg, high_reg = self._ACC[size]
        typ = int_type(size)
        wide = int_type(size * 2)
        ext = b.zext if m == "mul" else b.sext

        full = b.mul(ext(self.read_reg(acc), wide), ext(self.read_operand(ops[0]), wide))
        low = b.trunc(full, typ)
        high = b.trunc(b.lshr(full, ir.Constant(wide, size * 8)), typ)
        if m == "mul":
            overflow = b.icmp_unsigned('!=', high, ir.Constant(typ, 0))
        else:
            overflow = b.icmp_unsigned('!=', b.sext(low, wide), full)
        self.set_flag('cf', overflow)
        self.set_flag('of', overflow)

        if size == 1:
            self.write_reg('ax', full)
        else:
            self.write_reg(low_reg, low)
            self.write_reg(high_reg, high)

    def _lift_div(self, ops, m):
        """
        div/idiv: (e)dx:(e)ax or ax divided by the operand. A zero divisor
        or a quotient that does not fit traps.
        """
        b = self.builder
        size = operand_size(ops[0])
        typ = int_type(size)
        wide = int_type(size * 2)
        signed = m == "idiv"
        ext = b.sext if signed else b.zext

        if size == 1:
            dividend = self.read_reg('ax')
        else:
            _, low_reg, high_reg = self._ACC[size]
            high = b.shl(b.zext(self.read_reg(high_reg), wide), ir.Constant(wide, size * 8))
            dividend = b.or_(high, b.zext(self.read_reg(low_reg), wide))
        divisor = self.read_operand(ops[0])
        wide_divisor = ext(divisor, wide)

        bad = b.icmp_unsigned('==', divisor, ir.Constant(typ, 0))
        if signed:
            min_wide = ir.Constant(wide, 1 << (size * 16 - 1))
            minus_one = b.icmp_signed('==', divisor, ir.Constant(typ, -1 & ((1 << size * 8) - 1)))
            bad = b.or_(bad, b.and_(minus_one, b.icmp_unsigned('==', dividend, min_wide)))
        self._trap_if(bad)

        if signed:
            quot = b.sdiv(dividend, wide_divisor)
            rem = b.srem(dividend, wide_divisor)
            fits = b.icmp_unsigned('==', b.sext(b.trunc(quot, typ), wide), quot)
        else:
            quot = b.udiv(dividend, wide_divisor)
            rem = b.urem(dividend, wide_divisor)
            fits = b.icmp_unsigned('==', b.zext(b.trunc(quot, typ), wide), quot)
        self._trap_if(b.not_(fits))

        acc = self._ACC[size]
        self.write_reg(acc[1], b.trunc(quot, typ))
        self.write_reg(acc[2], b.trunc(rem, typ))

    def _shift_count(self, op):
        """Masked shift count as an i64 value plus its static value, if any."""
        if op.type == "imm":
            count = op.imm & 31
            return ir.Constant(I64, count), count
        value = self.builder.zext(self.read_operand(op), I64)
        return self.builder.and_(value, ir.Constant(I64, 31)), None

    def _lift_shift(self, ops, m):
        """shl/sal/shr/sar, computed in 64 bits so counts up to 31 are defined."""
        b = self.builder
        value = self.read_operand(ops[0])
        typ = value.type
        width = typ.width
        if len(ops) > 1:
            count, static = self._shift_count(ops[1])
        else:
            count, static = ir.Constant(I64, 1), 1
        if static == 0:
            return
        one = ir.Constant(I64, 1)

        if m in ("shl", "sal"):
            shifted = b.shl(b.zext(value, I64), count)
            result = b.trunc(shifted, typ)
            cf = b.trunc(b.lshr(shifted, ir.Constant(I64, width)), I1)
            of = b.xor(self._is_negative(result), cf)
        elif m == "shr":
            wide = b.zext(value, I64)
            result = b.trunc(b.lshr(wide, count), typ)
            cf = b.trunc(b.lshr(b.shl(wide, one), count), I1)
            of = self._is_negative(value)
        else:
            wide = b.sext(value, I64)
            result = b.trunc(b.ashr(wide, count), typ)
            cf = b.trunc(b.ashr(b.shl(wide, one), count), I1)
            of = ir.Constant(I1, 0)

        keep = None
        if static is None:
            keep = b.icmp_unsigned('==', count, ir.Constant(I64, 0))
        self.set_flag('cf', cf, keep)
        self.set_flag('of', of, keep)
        self.set_result_flags(result, keep)
        self.write_operand(ops[0], result)

    def _lift_rotate(self, ops, m):
        b = self.builder
        value = self.read_operand(ops[0])
        typ = value.type
        if len(ops) > 1:
            count, static = self._shift_count(ops[1])
        else:
            count, static = ir.Constant(I64, 1), 1
        if static == 0:
            return
        amount = b.trunc(count, typ) if typ.width < 64 else count
        funnel = self._intrinsic('llvm.fshl' if m == "rol" else 'llvm.fshr', typ, nargs=3)
        result = b.call(funnel, [value, value, amount])

        msb = self._is_negative(result)
        if m == "rol":
            cf = b.trunc(result, I1)
            of = b.xor(msb, cf)
        else:
            cf = msb
            second = b.trunc(b.lshr(result, ir.Constant(typ, typ.width - 2)), I1)
            of = b.xor(msb, second)

        keep = None
        if static is None:
            keep = b.icmp_unsigned('==', count, ir.Constant(I64, 0))
        self.set_flag('cf', cf, keep)
        self.set_flag('of', of, keep)
        self.write_operand(ops[0], result)

    # --- Flags ---

    def _lift_sahf(self):
        b = self.builder
        ah = self.read_reg('ah')
        for name, bit in (('sf', 7), ('zf', 6), ('pf', 2), ('cf', 0)):
            value = b.lshr(ah, ir.Constant(I8, bit)) if bit else ah
            self.set_flag(name, b.trunc(value, I1))

    def _lift_lahf(self):
        b = self.builder
        ah = ir.Constant(I8, 0x02)
        for name, bit in (('sf', 7), ('zf', 6), ('pf', 2), ('cf', 0)):
            value = b.zext(self.flag(name), I8)
            if bit:
                value = b.shl(value, ir.Constant(I8, bit))
            ah = b.or_(ah, value)
        self.write_reg('ah', ah)

    def _lift_cmov(self, ops, cc):
        cond = self.condition(cc)
        src = self.read_operand(ops[1])
        dst = self.read_operand(ops[0])
        self.write_operand(ops[0], self.builder.select(cond, src, dst))

    # --- Control flow ---

    def _call_target(self, op: Operand) -> ir.Value:
        """Callee of an indirect call/jmp: a named import or a code pointer."""
        if op.type == "mem" and not op.mem_base and not op.mem_index:
            slot = op.mem_disp & MASK32
            if slot in self.lifter.iat_map:
                dll, name = self.lifter.iat_map[slot]
                return self._declare(import_name(dll, name))
        target = self.read_operand(op, 4)
        return self.builder.inttoptr(target, FNTY.as_pointer())

    def _lift_call(self, insn, ops):
        """Push the return address and call; execution continues after the call."""
        self.push_value(ir.Constant(I32, insn.end_address))
        target = insn.get_branch_target()
        if target is not None:
            callee = self._declare(func_name(target))
        else:
            callee = self._call_target(ops[0])
        self.builder.call(callee, [])

    def _lift_ret(self, ops):
        b = self.builder
        pop = 4
        if ops and ops[0].type == "imm":
            pop += ops[0].imm & 0xFFFF
        self.write_reg('esp', b.add(self.read_reg('esp'), ir.Constant(I32, pop)))
        b.ret_void()

    def _lift_jmp(self, insn, ops):
        b = self.builder
        target = insn.get_branch_target()
        if target is None:
            b.call(self._call_target(ops[0]), [])
            b.ret_void()
        elif target != self.func.address and target in self.lifter.func_addrs:
            # Tail call
            b.call(self._declare(func_name(target)), [])
            b.ret_void()
        else:
            b.branch(self._block(target, insn.address))

    def _lift_jcc(self, insn, m):
        b = self.builder
        target = insn.get_branch_target()
        if target is None:
            raise DecodeError(insn.address, f"indirect conditional branch '{m}'")
        taken = self._block(target, insn.address)
        fallthrough = self._block(insn.end_address, insn.address)

        if m in ("jecxz", "jcxz"):
            counter = self.read_reg('ecx' if m == "jecxz" else 'cx')
            cond = b.icmp_unsigned('==', counter, ir.Constant(counter.type, 0))
        elif m.startswith("loop"):
            ecx = b.sub(self.read_reg('ecx'), ir.Constant(I32, 1))
            self.write_reg('ecx', ecx)
            cond = b.icmp_unsigned('!=', ecx, ir.Constant(I32, 0))
            if m == "loope":
                cond = b.and_(cond, self.flag('zf'))
            elif m == "loopne":
                cond = b.and_(cond, b.not_(self.flag('zf')))
        else:
            cond = self.condition(m[1:])
        b.cbranch(cond, taken, fallthrough)


def block_names(module: ir.Module) -> Tuple[str, ...]:
    """Names of the basic blocks of every defined function, in order."""
    return tuple(block.name
                 for fn in module.functions if not fn.is_declaration
                 for block in fn.blocks)
