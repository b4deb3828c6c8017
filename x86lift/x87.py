"""
x87 floating-point instruction lifting.

X87Mixin is mixed into lifter.FunctionLifter. All register access goes
through the function's FPUStack, so ST(i) operands resolve against the
runtime TOP and every push/pop wraps modulo 8. Values are held as x86_fp80;
memory operands are widened on load (fpext, sitofp) and narrowed on store
(fptrunc, llvm.rint or llvm.trunc + fptosi).
"""

import re

from llvmlite import ir

from .errors import DecodeError
from .irtypes import I1, I16, X86_FP80, X87_CONSTANTS, float_type, fp80_const, int_type


# mnemonic -> (IRBuilder method, reversed operands, pops, integer memory operand)
ARITH = {
    'fadd':   ('fadd', False, False, False),
    'faddp':  ('fadd', False, True,  False),
    'fiadd':  ('fadd', False, False, True),
    'fsub':   ('fsub', False, False, False),
    'fsubp':  ('fsub', False, True,  False),
    'fisub':  ('fsub', False, False, True),
    'fsubr':  ('fsub', True,  False, False),
    'fsubrp': ('fsub', True,  True,  False),
    'fisubr': ('fsub', True,  False, True),
    'fmul':   ('fmul', False, False, False),
    'fmulp':  ('fmul', False, True,  False),
    'fimul':  ('fmul', False, False, True),
    'fdiv':   ('fdiv', False, False, False),
    'fdivp':  ('fdiv', False, True,  False),
    'fidiv':  ('fdiv', False, False, True),
    'fdivr':  ('fdiv', True,  False, False),
    'fdivrp': ('fdiv', True,  True,  False),
    'fidivr': ('fdiv', True,  False, True),
}

# Compares setting C0/C2/C3: mnemonic -> (pops, integer memory operand)
COMPARES = {
    'fcom':    (0, False),
    'fcomp':   (1, False),
    'fcompp':  (2, False),
    'fucom':   (0, False),
    'fucomp':  (1, False),
    'fucompp': (2, False),
    'ficom':   (0, True),
    'ficomp':  (1, True),
}

# Compares setting ZF/PF/CF: mnemonic -> pops
COMPARES_EFLAGS = {
    'fcomi': 0, 'fucomi': 0,
    'fcomip': 1, 'fucomip': 1,
    'fcompi': 1, 'fucompi': 1,
}

UNARY = {'fchs', 'fabs', 'fsqrt', 'frndint'}

# No effect on the modelled state: exceptions and tag word are not tracked
NOPS = {'fwait', 'wait', 'fnop', 'fnclex', 'fclex', 'ffree'}

OTHER = {
    'fld', 'fild', 'fst', 'fstp', 'fist', 'fistp', 'fisttp', 'fxch', 'ftst',
    'fnstsw', 'fstsw', 'fnstcw', 'fstcw', 'fldcw', 'fninit', 'finit',
    'fincstp', 'fdecstp',
}

X87_MNEMONICS = (set(ARITH) | set(COMPARES) | set(COMPARES_EFLAGS) | UNARY
                 | NOPS | OTHER | set(X87_CONSTANTS))

_ST_REG = re.compile(r'^st\(?([0-7])\)?$')


def st_index(name: str) -> int:
    """'st(3)' -> 3"""
    m = _ST_REG.match(name or "")
    if m is None:
        raise ValueError(f"not an x87 register: {name!r}")
    return int(m.group(1))


class X87Mixin:
    """x87 handlers; expects the FunctionLifter state (builder, fpu, operands)."""

    def _st(self, op) -> int:
        try:
            return st_index(op.reg)
        except ValueError as e:
            raise DecodeError(self.insn.address, str(e)) from e

    def _reg_pair(self, ops, pops):
        """(dst, src) ST indices of a register-form arithmetic instruction."""
        regs = [self._st(op) for op in ops]
        if len(regs) == 2:
            return regs[0], regs[1]
        if len(regs) == 1:
            return (regs[0], 0) if pops else (0, regs[0])
        return (1, 0) if pops else (0, 1)

    def _float_source(self, op) -> ir.Value:
        typ = float_type(op.size)
        value = self.load_mem(self.mem_address(op), typ)
        if typ is not X86_FP80:
            value = self.builder.fpext(value, X86_FP80)
        return value

    def _int_source(self, op) -> ir.Value:
        value = self.load_mem(self.mem_address(op), int_type(op.size))
        return self.builder.sitofp(value, X86_FP80)

    def _pop_n(self, n):
        for _ in range(n):
            self.fpu.pop(self.builder)

    def lift_x87(self, insn, m, ops):
        b = self.builder
        fpu = self.fpu

        if m in ARITH:
            return self._lift_farith(ops, m)
        if m in COMPARES:
            return self._lift_fcom(ops, m)
        if m in COMPARES_EFLAGS:
            return self._lift_fcomi(ops, m)
        if m in X87_CONSTANTS:
            return fpu.push(b, fp80_const(X87_CONSTANTS[m]))
        if m in UNARY:
            return self._lift_funary(m)
        if m in NOPS:
            return

        if m == 'fld':
            if ops[0].type == "mem":
                value = self._float_source(ops[0])
            else:
                value = fpu.read(b, self._st(ops[0]))
            return fpu.push(b, value)
        if m == 'fild':
            return fpu.push(b, self._int_source(ops[0]))
        if m in ('fst', 'fstp'):
            return self._lift_fst(ops, pop=m == 'fstp')
        if m in ('fist', 'fistp', 'fisttp'):
            return self._lift_fist(ops, m)
        if m == 'fxch':
            i = self._st(ops[-1]) if ops else 1
            if i == 0 and len(ops) == 2:
                i = self._st(ops[0])
            top = fpu.read(b, 0)
            other = fpu.read(b, i)
            fpu.write(b, 0, other)
            return fpu.write(b, i, top)
        if m == 'ftst':
            return self._set_fpu_compare(fpu.read(b, 0), fp80_const(0.0))
        if m in ('fnstsw', 'fstsw'):
            return self.write_operand(ops[0], fpu.status_word(b))
        if m in ('fnstcw', 'fstcw'):
            return self.store_mem(self.mem_address(ops[0]), fpu.load_control_word(b))
        if m == 'fldcw':
            return fpu.store_control_word(b, self.load_mem(self.mem_address(ops[0]), I16))
        if m in ('fninit', 'finit'):
            return fpu.reset(b)
        if m == 'fincstp':
            fpu.inc_top(b)
            return
        if m == 'fdecstp':
            fpu.dec_top(b)
            return

        self._unsupported()

    def _lift_farith(self, ops, m):
        b = self.builder
        fpu = self.fpu
        opname, reverse, pops, integer = ARITH[m]
        if ops and ops[0].type == "mem":
            dst = 0
            src = self._int_source(ops[0]) if integer else self._float_source(ops[0])
        else:
            dst, src_index = self._reg_pair(ops, pops)
            src = fpu.read(b, src_index)
        cur = fpu.read(b, dst)
        lhs, rhs = (src, cur) if reverse else (cur, src)
        fpu.write(b, dst, getattr(b, opname)(lhs, rhs))
        if pops:
            fpu.pop(b)

    def _lift_funary(self, m):
        b = self.builder
        value = self.fpu.read(b, 0)
        if m == 'fchs':
            result = b.fneg(value)
        else:
            name = {'fabs': 'llvm.fabs', 'fsqrt': 'llvm.sqrt', 'frndint': 'llvm.rint'}[m]
            result = b.call(self._intrinsic(name, X86_FP80), [value])
        self.fpu.write(b, 0, result)

    def _lift_fst(self, ops, pop):
        b = self.builder
        value = self.fpu.read(b, 0)
        op = ops[0]
        if op.type == "mem":
            typ = float_type(op.size)
            if typ is not X86_FP80:
                value = b.fptrunc(value, typ)
            self.store_mem(self.mem_address(op), value)
        else:
            self.fpu.write(b, self._st(op), value)
        if pop:
            self.fpu.pop(b)

    def _lift_fist(self, ops, m):
        """
        Store ST(0) as a signed integer. fist/fistp round in the current
        mode, fisttp truncates; out of range values and NaN store the
        integer indefinite value.
        """
        b = self.builder
        op = ops[0]
        size = op.size
        typ = int_type(size)
        bits = size * 8

        value = self.fpu.read(b, 0)
        # Range check the integral value that will be stored
        rounding = 'llvm.trunc' if m == 'fisttp' else 'llvm.rint'
        value = b.call(self._intrinsic(rounding, X86_FP80), [value])
        lo = fp80_const(float(-(1 << (bits - 1))))
        hi = fp80_const(float(1 << (bits - 1)))
        in_range = b.and_(b.fcmp_ordered('>=', value, lo), b.fcmp_ordered('<', value, hi))
        # Keep fptosi's operand in range on the untaken path
        safe = b.select(in_range, value, fp80_const(0.0))
        result = b.select(in_range, b.fptosi(safe, typ), ir.Constant(typ, 1 << (bits - 1)))
        self.store_mem(self.mem_address(op), result)
        if m != 'fist':
            self.fpu.pop(b)

    def _compare_source(self, ops, integer):
        b = self.builder
        if ops and ops[0].type == "mem":
            return self._int_source(ops[0]) if integer else self._float_source(ops[0])
        if ops:
            return self.fpu.read(b, self._st(ops[-1]))
        return self.fpu.read(b, 1)

    def _compare(self, lhs, rhs):
        """(less, equal, unordered); NaN operands set all three."""
        b = self.builder
        return (b.fcmp_unordered('<', lhs, rhs),
                b.fcmp_unordered('==', lhs, rhs),
                b.fcmp_unordered('uno', lhs, rhs))

    def _set_fpu_compare(self, lhs, rhs):
        less, equal, unordered = self._compare(lhs, rhs)
        self.fpu.set_cc(self.builder, c0=less, c1=False, c2=unordered, c3=equal)

    def _lift_fcom(self, ops, m):
        pops, integer = COMPARES[m]
        src = self._compare_source(ops, integer)
        self._set_fpu_compare(self.fpu.read(self.builder, 0), src)
        self._pop_n(pops)

    def _lift_fcomi(self, ops, m):
        b = self.builder
        src = self._compare_source(ops, integer=False)
        less, equal, unordered = self._compare(self.fpu.read(b, 0), src)
        self.set_flag('cf', less)
        self.set_flag('zf', equal)
        self.set_flag('pf', unordered)
        self.set_flag('of', ir.Constant(I1, 0))
        self.set_flag('sf', ir.Constant(I1, 0))
        self._pop_n(COMPARES_EFLAGS[m])
