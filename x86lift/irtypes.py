"""
IR types shared by the lifter modules.

llvmlite has no x87 extended precision type, so X86FP80Type provides one:
it prints as x86_fp80 and formats constants in LLVM's 0xK notation (sign
bit, 15-bit exponent and 64-bit mantissa with explicit integer bit).
"""

import struct

from llvmlite import ir


I1 = ir.IntType(1)
I8 = ir.IntType(8)
I16 = ir.IntType(16)
I32 = ir.IntType(32)
I64 = ir.IntType(64)
F32 = ir.FloatType()
F64 = ir.DoubleType()
VOID = ir.VoidType()

# Exponent bias difference between binary64 (1023) and x87 extended (16383)
_BIAS_DELTA = 16383 - 1023


def double_to_fp80(value: float) -> int:
    """Exact 80-bit encoding of a Python float."""
    bits = struct.unpack('<Q', struct.pack('<d', value))[0]
    sign = bits >> 63
    exp = (bits >> 52) & 0x7FF
    frac = bits & ((1 << 52) - 1)

    if exp == 0x7FF:
        # inf / nan
        exp80 = 0x7FFF
        mantissa = (1 << 63) | (frac << 11)
    elif exp == 0:
        if frac == 0:
            exp80, mantissa = 0, 0
        else:
            # Subnormal double: normalise, every double is normal in fp80
            shift = 64 - frac.bit_length()
            mantissa = frac << shift
            exp80 = 1 - 1023 - 52 + 63 - shift + 16383
    else:
        exp80 = exp + _BIAS_DELTA
        mantissa = ((1 << 52) | frac) << 11

    return (sign << 79) | (exp80 << 64) | mantissa


class X86FP80Type(ir.Type):
    """The x87 80-bit extended precision float type."""

    null = '0xK00000000000000000000'
    intrinsic_name = 'f80'

    def _to_string(self):
        return 'x86_fp80'

    def __eq__(self, other):
        return isinstance(other, X86FP80Type)

    def __hash__(self):
        return hash(X86FP80Type)

    def format_constant(self, value):
        """
        value is either a Python float (converted exactly) or an FP80Bits
        raw encoding.
        """
        if isinstance(value, FP80Bits):
            bits = value.bits
        else:
            bits = double_to_fp80(float(value))
        return f"0xK{bits:020X}"


class FP80Bits:
    """Raw 80-bit encoding, for constants not representable as a double."""

    __slots__ = ('bits',)

    def __init__(self, bits: int):
        if not 0 <= bits < (1 << 80):
            raise ValueError(f"not an 80-bit value: 0x{bits:X}")
        self.bits = bits

    def __eq__(self, other):
        return isinstance(other, FP80Bits) and other.bits == self.bits

    def __hash__(self):
        return hash(self.bits)

    def __repr__(self):
        return f"FP80Bits(0x{self.bits:020X})"


X86_FP80 = X86FP80Type()


def fp80_const(value) -> ir.Constant:
    if isinstance(value, int) and not isinstance(value, bool):
        value = FP80Bits(value)
    return ir.Constant(X86_FP80, value)


# Constants loaded by fld1, fldz, fldpi, fldl2t, fldl2e, fldlg2, fldln2,
# as the FPU holds them (round to nearest).
FP80_ONE = FP80Bits(0x3FFF8000000000000000)
FP80_ZERO = FP80Bits(0)
FP80_PI = FP80Bits(0x4000C90FDAA22168C235)
FP80_L2T = FP80Bits(0x4000D49A784BCD1B8AFE)
FP80_L2E = FP80Bits(0x3FFFB8AA3B295C17F0BC)
FP80_LG2 = FP80Bits(0x3FFD9A209A84FBCFF799)
FP80_LN2 = FP80Bits(0x3FFEB17217F7D1CF79AC)

X87_CONSTANTS = {
    'fld1': FP80_ONE,
    'fldz': FP80_ZERO,
    'fldpi': FP80_PI,
    'fldl2t': FP80_L2T,
    'fldl2e': FP80_L2E,
    'fldlg2': FP80_LG2,
    'fldln2': FP80_LN2,
}


def int_type(size: int) -> ir.IntType:
    """Integer type for an operand size in bytes."""
    return ir.IntType(size * 8)


def float_type(size: int) -> ir.Type:
    """Floating-point type for a memory operand size in bytes."""
    if size == 4:
        return F32
    if size == 8:
        return F64
    if size == 10:
        return X86_FP80
    raise ValueError(f"no floating-point type of size {size}")

