"""Tests for the x86_fp80 type and its constant encoding."""

import math

import pytest
from llvmlite import ir

from x86lift.irtypes import (FP80_ONE, FP80_PI, FP80Bits, X86_FP80, X87_CONSTANTS,
                             double_to_fp80, float_type, fp80_const, int_type)


@pytest.mark.parametrize("value, bits", [
    (1.0, 0x3FFF8000000000000000),
    (-2.0, 0xC0008000000000000000),
    (0.5, 0x3FFE8000000000000000),
    (0.0, 0),
    (-0.0, 1 << 79),
    (math.inf, 0x7FFF8000000000000000),
    (-math.inf, 0xFFFF8000000000000000),
    (math.pi, 0x4000C90FDAA22168C000),
    (5e-324, 0x3BCD8000000000000000),
])
def test_double_to_fp80(value, bits):
    assert double_to_fp80(value) == bits


def test_nan_stays_nan():
    bits = double_to_fp80(math.nan)
    assert (bits >> 64) & 0x7FFF == 0x7FFF
    assert bits & ((1 << 63) - 1) != 0


def test_constant_formatting():
    assert str(X86_FP80) == "x86_fp80"
    assert str(ir.Constant(X86_FP80, 1.0)) == "x86_fp80 0xK3FFF8000000000000000"
    assert str(fp80_const(FP80_PI.bits)) == "x86_fp80 0xK4000C90FDAA22168C235"


def test_fldpi_is_more_precise_than_double_pi():
    assert X87_CONSTANTS['fldpi'] == FP80_PI
    assert FP80_PI.bits != double_to_fp80(math.pi)
    assert X87_CONSTANTS['fld1'] == FP80_ONE == FP80Bits(double_to_fp80(1.0))


def test_fp80bits_range():
    with pytest.raises(ValueError):
        FP80Bits(1 << 80)


def test_type_helpers():
    assert int_type(2) == ir.IntType(16)
    assert float_type(4) == ir.FloatType()
    assert float_type(8) == ir.DoubleType()
    assert float_type(10) == X86_FP80
    with pytest.raises(ValueError):
        float_type(2)


def test_fp80_parses_in_llvm(llvm):
    mod = ir.Module(name="fp80")
    gv = ir.GlobalVariable(mod, X86_FP80, "one")
    gv.initializer = ir.Constant(X86_FP80, 1.0)
    llvm.parse_assembly(str(mod)).verify()
