"""Tests for function and basic block reconstruction."""

import pytest

from conftest import TEXT, assemble, at, imm, insn, make_builder, mem, reg
from x86lift.disasm import Instruction, func_name
from x86lift.errors import DecodeError


def test_straight_line_function():
    program = assemble([
        ("mov", reg("eax"), imm(1)),
        ("ret",),
    ])
    func = make_builder(program, [TEXT], [TEXT]).decode_function(TEXT)
    assert func.name == "sub_401000"
    assert list(func.blocks) == [TEXT]
    block = func.blocks[TEXT]
    assert [i.mnemonic for i in block.instructions] == ["mov"]
    assert block.term.mnemonic == "ret"
    assert block.successors == []
    assert func.num_instructions == 2


def test_diamond_blocks_decoded_once():
    program = assemble([
        ("cmp", reg("eax"), imm(0)),      # 0
        ("je", imm(at(4))),               # 1
        ("mov", reg("ebx"), imm(1)),      # 2
        ("jmp", imm(at(5))),              # 3
        ("mov", reg("ebx"), imm(2)),      # 4
        ("ret",),                         # 5
    ])
    blocks = [at(0), at(2), at(4), at(5)]
    builder = make_builder(program, [TEXT], blocks)
    func = builder.decode_function(TEXT)

    assert list(func.blocks) == blocks
    assert func.blocks[at(0)].successors == [at(4), at(2)]
    assert func.blocks[at(4)].has_dummy_term
    assert func.blocks[at(4)].successors == [at(5)]
    assert sorted(builder.decode.calls) == sorted(set(builder.decode.calls))


def test_blocks_are_subset_of_known_addresses():
    program = assemble([
        ("inc", reg("eax")),
        ("loop", imm(at(0))),
        ("ret",),
    ])
    blocks = {at(0), at(2), 0x401800}
    func = make_builder(program, [TEXT], blocks).decode_function(TEXT)
    assert set(func.blocks) <= blocks
    assert set(func.blocks) == {at(0), at(2)}


def test_call_with_known_return_block_falls_through():
    program = assemble([
        ("call", imm(0x401100)),
        ("ret",),
    ])
    func = make_builder(program, [TEXT, 0x401100], [TEXT, at(1), 0x401100]).decode_function(TEXT)
    assert func.blocks[TEXT].successors == [at(1)]


def test_call_without_return_block_stays_in_block():
    program = assemble([
        ("call", imm(0x401100)),
        ("mov", reg("ebx"), imm(1)),
        ("ret",),
    ])
    builder = make_builder(program, [TEXT, 0x401100], [TEXT, 0x401100])
    func = builder.decode_function(TEXT)
    assert list(func.blocks) == [TEXT]
    block = func.blocks[TEXT]
    assert [i.mnemonic for i in block.instructions] == ["call", "mov"]
    assert block.term.mnemonic == "ret"
    assert block.successors == []
    assert func.num_instructions == 3
    assert 0x401100 not in builder.decode.calls


def test_call_then_trap_ends_at_trap():
    program = assemble([
        ("call", mem(disp=0x402000)),
        ("int3",),
    ])
    func = make_builder(program, [TEXT], [TEXT]).decode_function(TEXT)
    assert list(func.blocks) == [TEXT]
    block = func.blocks[TEXT]
    assert [i.mnemonic for i in block.instructions] == ["call"]
    assert block.term.mnemonic == "int3"
    assert block.successors == []


def test_branch_into_other_function_is_not_decoded():
    program = assemble([
        ("test", reg("eax"), reg("eax")),   # 0
        ("jne", imm(at(3))),                # 1
        ("ret",),                           # 2
        ("mov", reg("ebx"), imm(7)),        # 3: sub_40100C
        ("ret",),                           # 4
    ])
    builder = make_builder(program, [TEXT, at(3)], [TEXT, at(2), at(3)])
    func = builder.decode_function(TEXT)
    assert list(func.blocks) == [TEXT, at(2)]
    assert func.blocks[TEXT].successors == [at(3), at(2)]
    assert at(3) not in builder.decode.calls
    assert at(4) not in builder.decode.calls


def test_fallthrough_into_other_function_is_not_decoded():
    program = assemble([
        ("mov", reg("eax"), imm(1)),        # 0
        ("mov", reg("ebx"), imm(7)),        # 1: sub_401004
        ("ret",),                           # 2
    ])
    builder = make_builder(program, [TEXT, at(1)], [TEXT, at(1)])
    func = builder.decode_function(TEXT)
    assert list(func.blocks) == [TEXT]
    assert func.blocks[TEXT].has_dummy_term
    assert func.blocks[TEXT].successors == [at(1)]
    assert at(1) not in builder.decode.calls


def test_tail_call_and_indirect_jump_have_no_successors():
    program = assemble([
        ("test", reg("eax"), reg("eax")),
        ("jne", imm(at(3))),
        ("jmp", imm(0x401100)),
        ("jmp", mem(index="eax", scale=4, disp=0x402000)),
    ])
    blocks = [at(0), at(2), at(3), 0x401100]
    func = make_builder(program, [TEXT, 0x401100], blocks).decode_function(TEXT)
    assert func.blocks[at(2)].successors == []
    assert func.blocks[at(3)].successors == []


def test_unknown_branch_target():
    program = assemble([
        ("jmp", imm(at(7))),
    ])
    with pytest.raises(DecodeError, match="not a known basic block"):
        make_builder(program, [TEXT], [TEXT]).decode_function(TEXT)


def test_entry_must_be_a_block():
    with pytest.raises(DecodeError):
        make_builder([], [TEXT], []).decode_function(TEXT)


def test_instruction_may_not_cross_into_data():
    program = [insn(TEXT, 8, "mov", reg("eax"), mem(disp=0x402000))]
    with pytest.raises(DecodeError):
        make_builder(program, [TEXT], [TEXT], data=[TEXT + 4]).decode_function(TEXT)


def test_decoding_stops_at_section_end():
    program = assemble([("nop",)] * 0x40)
    with pytest.raises(DecodeError):
        make_builder(program, [TEXT], [TEXT]).decode_function(TEXT)


def test_non_executable_address():
    builder = make_builder([], [], [])
    with pytest.raises(DecodeError, match="executable"):
        builder.decode_insn(0x402000)
    with pytest.raises(DecodeError):
        builder.decode_insn(0x500000)


def test_decode_insn_is_cached():
    program = assemble([("ret",)])
    builder = make_builder(program, [TEXT], [TEXT])
    assert builder.decode_insn(TEXT) is builder.decode_insn(TEXT)
    assert builder.decode.calls == [TEXT]


def test_instruction_properties():
    jcc = Instruction(TEXT, 2, "jne", operands=[imm(0x401010)])
    assert jcc.is_cond_jump and jcc.is_terminator
    assert jcc.get_branch_target() == 0x401010
    call = Instruction(TEXT, 6, "call", operands=[mem(disp=0x402000)])
    assert call.get_branch_target() is None
    assert call.end_address == TEXT + 6
    assert not Instruction(TEXT, 1, "push", operands=[reg("ebp")]).is_terminator
    assert func_name(0x401000) == "sub_401000"
