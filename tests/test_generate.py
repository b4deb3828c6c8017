"""Tests for the batch lifting driver."""

import json

from conftest import TEXT, assemble, at, imm, make_builder, reg
from x86lift.generate import LiftFailure, lift_functions, write_modules
from x86lift.lifter import Lifter


SECOND = at(4)
THIRD = at(8)


def build():
    program = assemble([
        ("mov", reg("eax"), imm(1)),      # 0: sub_401000
        ("ret",),
        ("nop",),
        ("nop",),
        ("cpuid",),                       # 4: sub_401010, unsupported
        ("ret",),
        ("nop",),
        ("nop",),
        ("jmp", imm(0x401080)),           # 8: sub_401020, bad target
    ])
    funcs = [THIRD, TEXT, SECOND, TEXT]
    builder = make_builder(program, funcs, set(funcs))
    return builder, Lifter(func_addrs=funcs), funcs


def test_failures_are_collected(capsys):
    builder, lifter, funcs = build()
    report = lift_functions(builder, lifter, funcs)

    assert [f.address for f in report.lifted] == [TEXT]
    assert not report.ok
    assert [(f.address, f.kind) for f in report.failures] == [
        (SECOND, "UnsupportedOpcodeError"),
        (THIRD, "DecodeError"),
    ]
    err = capsys.readouterr().err
    assert "[!] sub_401010: UnsupportedOpcodeError: 0x00401010: support for opcode 'cpuid'" in err
    assert "[*]" not in err


def test_progress_output(capsys):
    builder, lifter, _ = build()
    lift_functions(builder, lifter, [TEXT], quiet=False)
    assert "[*] 1 functions lifted, 0 failed" in capsys.readouterr().err


def test_write_modules(tmp_path):
    builder, lifter, funcs = build()
    report = lift_functions(builder, lifter, funcs)
    paths = write_modules(tmp_path, report)

    assert [p.name for p in paths] == ["sub_401000.ll"]
    assert 'define void @"sub_401000"()' in paths[0].read_text()

    index = json.loads((tmp_path / "functions.json").read_text())
    assert index["functions"] == [{
        "address": "0x00401000",
        "name": "sub_401000",
        "num_blocks": 1,
        "num_instructions": 2,
    }]
    assert [f["kind"] for f in index["failures"]] == ["UnsupportedOpcodeError", "DecodeError"]


def test_failure_str():
    failure = LiftFailure(0x401010, "DecodeError", "0x00401012: truncated instruction")
    assert str(failure) == "sub_401010: DecodeError: 0x00401012: truncated instruction"
