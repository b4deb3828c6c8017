"""
x87 register stack emulation.

The eight physical data registers are separate storage cells; ST(i) names
the cell (TOP + i) mod 8, where TOP is a runtime value. Accesses through a
runtime index are lowered to a switch over all cells converging on a join
block, so every IR store names exactly one statically known cell.
"""

from typing import List, Sequence

from llvmlite import ir

from .errors import InvariantViolation
from .irtypes import I1, I8, I16, X86_FP80


NUM_SLOTS = 8

# Control word after FNINIT: all exceptions masked, 64-bit precision,
# round to nearest.
DEFAULT_CONTROL_WORD = 0x037F

# Status word bit positions
SW_C0 = 8
SW_C1 = 9
SW_C2 = 10
SW_TOP = 11
SW_C3 = 14


class RegisterBank:
    """A fixed set of storage cells addressed by a runtime integer index."""

    def __init__(self, cells: Sequence[ir.Value], typ: ir.Type, name: str = "bank"):
        self.cells = list(cells)
        self.typ = typ
        self.name = name

    def __len__(self):
        return len(self.cells)

    def _dispatch(self, builder: ir.IRBuilder, index: ir.Value, op: str):
        """
        Terminate the current block with a switch on index. Returns the
        per-cell case blocks and the join block; the default case block
        holds only an unreachable terminator.
        """
        func = builder.function
        default = func.append_basic_block(f"{self.name}.{op}.bad")
        cases = [func.append_basic_block(f"{self.name}.{op}.{i}")
                 for i in range(len(self.cells))]
        join = func.append_basic_block(f"{self.name}.{op}.join")

        switch = builder.switch(index, default)
        for i, block in enumerate(cases):
            switch.add_case(ir.Constant(index.type, i), block)

        builder.position_at_end(default)
        builder.unreachable()
        return cases, join

    def load(self, builder: ir.IRBuilder, index: ir.Value) -> ir.Value:
        cases, join = self._dispatch(builder, index, "load")
        incoming = []
        for cell, block in zip(self.cells, cases):
            builder.position_at_end(block)
            incoming.append((builder.load(cell, typ=self.typ), block))
            builder.branch(join)

        builder.position_at_end(join)
        phi = builder.phi(self.typ)
        for value, block in incoming:
            phi.add_incoming(value, block)
        return phi

    def store(self, builder: ir.IRBuilder, index: ir.Value, value: ir.Value):
        cases, join = self._dispatch(builder, index, "store")
        for cell, block in zip(self.cells, cases):
            builder.position_at_end(block)
            builder.store(value, cell)
            builder.branch(join)
        builder.position_at_end(join)


class FPUStack:
    """
    The x87 data registers, TOP pointer, condition codes C0-C3 and
    control word.

    top: i8 cell holding the physical index of ST(0)
    slots: eight x86_fp80 cells, physical registers R0-R7
    cc: four i1 cells, C0 C1 C2 C3
    control_word: i16 cell
    """

    def __init__(self, top: ir.Value, slots: Sequence[ir.Value],
                 cc: Sequence[ir.Value], control_word: ir.Value):
        if len(slots) != NUM_SLOTS:
            raise ValueError(f"expected {NUM_SLOTS} slots, got {len(slots)}")
        if len(cc) != 4:
            raise ValueError(f"expected 4 condition code cells, got {len(cc)}")
        self.top = top
        self.bank = RegisterBank(slots, X86_FP80, name="fpu")
        self.cc: List[ir.Value] = list(cc)
        self.control_word = control_word

    @classmethod
    def allocate(cls, builder: ir.IRBuilder) -> "FPUStack":
        """Allocate the stack state at the builder position and reset it."""
        top = builder.alloca(I8, name="fpu_top")
        slots = [builder.alloca(X86_FP80, name=f"fpu_st{i}") for i in range(NUM_SLOTS)]
        cc = [builder.alloca(I1, name=f"fpu_c{i}") for i in range(4)]
        cw = builder.alloca(I16, name="fpu_cw")
        stack = cls(top, slots, cc, cw)
        stack.reset(builder)
        return stack

    @property
    def slots(self) -> List[ir.Value]:
        return self.bank.cells

    def reset(self, builder: ir.IRBuilder):
        """FNINIT: TOP = 0, condition codes cleared, default control word."""
        builder.store(ir.Constant(I8, 0), self.top)
        for cell in self.cc:
            builder.store(ir.Constant(I1, 0), cell)
        builder.store(ir.Constant(I16, DEFAULT_CONTROL_WORD), self.control_word)

    def load_top(self, builder: ir.IRBuilder) -> ir.Value:
        return builder.load(self.top, typ=I8)

    def _wrap(self, builder, top, edge, wrapped, step_down):
        """
        top == edge ? wrapped : top -/+ 1, as a two-way branch joined by
        a phi. Returns the new index.
        """
        func = builder.function
        at_edge = builder.icmp_unsigned('==', top, ir.Constant(I8, edge))
        wrap_bb = func.append_basic_block("fpu.top.wrap")
        step_bb = func.append_basic_block("fpu.top.step")
        join_bb = func.append_basic_block("fpu.top.join")
        builder.cbranch(at_edge, wrap_bb, step_bb)

        builder.position_at_end(wrap_bb)
        builder.branch(join_bb)

        builder.position_at_end(step_bb)
        if step_down:
            stepped = builder.sub(top, ir.Constant(I8, 1))
        else:
            stepped = builder.add(top, ir.Constant(I8, 1))
        builder.branch(join_bb)

        builder.position_at_end(join_bb)
        new_top = builder.phi(I8)
        new_top.add_incoming(ir.Constant(I8, wrapped), wrap_bb)
        new_top.add_incoming(stepped, step_bb)
        return new_top

    def dec_top(self, builder: ir.IRBuilder) -> ir.Value:
        """TOP = TOP == 0 ? 7 : TOP - 1. Returns the new TOP."""
        new_top = self._wrap(builder, self.load_top(builder), 0, NUM_SLOTS - 1, step_down=True)
        builder.store(new_top, self.top)
        return new_top

    def inc_top(self, builder: ir.IRBuilder) -> ir.Value:
        """TOP = TOP == 7 ? 0 : TOP + 1. Returns the new TOP."""
        new_top = self._wrap(builder, self.load_top(builder), NUM_SLOTS - 1, 0, step_down=False)
        builder.store(new_top, self.top)
        return new_top

    def push(self, builder: ir.IRBuilder, value: ir.Value):
        new_top = self.dec_top(builder)
        self.bank.store(builder, new_top, value)

    def pop(self, builder: ir.IRBuilder) -> ir.Value:
        value = self.bank.load(builder, self.load_top(builder))
        self.inc_top(builder)
        return value

    def physical_index(self, builder: ir.IRBuilder, i: int) -> ir.Value:
        """Physical register number of ST(i)."""
        if not 0 <= i < NUM_SLOTS:
            raise InvariantViolation(f"ST({i}) out of range")
        top = self.load_top(builder)
        if i == 0:
            return top
        return builder.and_(builder.add(top, ir.Constant(I8, i)), ir.Constant(I8, NUM_SLOTS - 1))

    def read(self, builder: ir.IRBuilder, i: int) -> ir.Value:
        return self.bank.load(builder, self.physical_index(builder, i))

    def write(self, builder: ir.IRBuilder, i: int, value: ir.Value):
        self.bank.store(builder, self.physical_index(builder, i), value)

    def set_cc(self, builder: ir.IRBuilder, c0=None, c1=None, c2=None, c3=None):
        """Store the given condition codes; None leaves a code unchanged."""
        for cell, value in zip(self.cc, (c0, c1, c2, c3)):
            if value is None:
                continue
            if not isinstance(value, ir.Value):
                value = ir.Constant(I1, int(bool(value)))
            builder.store(value, cell)

    def load_cc(self, builder: ir.IRBuilder, n: int) -> ir.Value:
        return builder.load(self.cc[n], typ=I1)

    def status_word(self, builder: ir.IRBuilder) -> ir.Value:
        """Compose the i16 status word from the condition codes and TOP."""
        sw = builder.shl(builder.zext(self.load_top(builder), I16), ir.Constant(I16, SW_TOP))
        for n, bit in enumerate((SW_C0, SW_C1, SW_C2, SW_C3)):
            code = builder.zext(self.load_cc(builder, n), I16)
            sw = builder.or_(sw, builder.shl(code, ir.Constant(I16, bit)))
        return sw

    def load_control_word(self, builder: ir.IRBuilder) -> ir.Value:
        return builder.load(self.control_word, typ=I16)

    def store_control_word(self, builder: ir.IRBuilder, value: ir.Value):
        builder.store(value, self.control_word)
