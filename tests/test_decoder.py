import pytest

from gs2_decompiler import (
    Op, FunctionInfo, decode_instructions, decode_function, mnemonic,
    parse_function_name, parse_parameter_prologue, format_fallback_line,
)


def test_unsigned_one_byte_number():
    instrs, _, err = decode_instructions(bytes([Op.TYPE_NUMBER, 0xF0, 0x05]), [])
    assert err is None
    assert len(instrs) == 1
    assert instrs[0].operand == 5
    assert instrs[0].text is None
    assert instrs[0].size == 3


def test_signed_one_byte_number():
    instrs, _, _ = decode_instructions(bytes([Op.TYPE_NUMBER, 0xF3, 0xFF]), [])
    assert instrs[0].operand == -1


def test_wide_numbers():
    code = bytes([Op.TYPE_NUMBER, 0xF1, 0x01, 0x00,
                  Op.TYPE_NUMBER, 0xF2, 0x00, 0x01, 0x00, 0x00,
                  Op.TYPE_NUMBER, 0xF4, 0xFF, 0xFE,
                  Op.TYPE_NUMBER, 0xF5, 0xFF, 0xFF, 0xFF, 0xFF])
    instrs, _, err = decode_instructions(code, [])
    assert err is None
    assert [i.operand for i in instrs] == [256, 65536, -2, -1]
    assert [i.addr for i in instrs] == [0, 4, 10, 14]


def test_number_as_text():
    instrs, _, err = decode_instructions(bytes([Op.TYPE_NUMBER, 0xF6]) + b'3.14\x00', [])
    assert err is None
    assert instrs[0].text == '3.14'
    assert instrs[0].operand is None
    assert instrs[0].size == 7


def test_string_reference():
    code = bytes([Op.TYPE_STRING, 0xF1, 0x00, 0x02])
    instrs, _, err = decode_instructions(code, ['a', 'b', 'c'])
    assert err is None
    assert instrs[0].operand == 2
    assert instrs[0].text == 'c'


def test_string_reference_out_of_range_is_empty():
    instrs, _, err = decode_instructions(bytes([Op.TYPE_VAR, 0xF1, 0x00, 0x02]), ['a'])
    assert err is None
    assert instrs[0].text == ''


def test_bad_number_prefix_stops_decoding():
    code = bytes([Op.TYPE_TRUE, Op.TYPE_NUMBER, 0xAA, Op.RET])
    instrs, _, err = decode_instructions(code, [])
    assert [i.op for i in instrs] == [Op.TYPE_TRUE]
    assert 'bad number prefix 0xAA' in err


def test_string_prefix_outside_index_range():
    instrs, _, err = decode_instructions(bytes([Op.TYPE_STRING, 0xF3, 0x01]), ['a'])
    assert instrs == []
    assert 'bad string index prefix' in err


def test_truncated_jump_operand():
    instrs, _, err = decode_instructions(bytes([Op.RET, Op.JMP, 0x00]), [])
    assert len(instrs) == 1
    assert 'need 2 bytes' in err


def test_unterminated_number_text():
    _, _, err = decode_instructions(bytes([Op.TYPE_NUMBER, 0xF6]) + b'12', [])
    assert 'unterminated' in err


def test_jump_targets_use_instruction_indices():
    code = bytes([Op.TYPE_TRUE, Op.IF, 0x00, 0x03, Op.TYPE_NULL, Op.JMP, 0xFF, 0xFD, Op.RET])
    instrs, targets, err = decode_instructions(code, [])
    assert err is None
    assert [i.index for i in instrs] == [0, 1, 2, 3, 4]
    assert targets == {4, 0}
    assert instrs[1].branch_target() == 4
    assert instrs[3].branch_target() == 0


def test_with_offset_is_not_a_branch_target():
    code = bytes([Op.PLAYER, Op.WITH, 0x00, 0x02, Op.WITHEND, 0x00, 0x00])
    _, targets, _ = decode_instructions(code, [])
    assert targets == set()


def test_out_of_range_targets_are_kept():
    func = FunctionInfo('f', 0, bytecode=bytes([Op.JMP, 0x00, 0x09]))
    decode_function(func, [])
    assert func.jump_targets == {9}
    assert func.out_of_range_targets() == {9}


def test_decode_is_deterministic():
    code = bytes([Op.TYPE_STRING, 0xF0, 0x00, Op.TYPE_NUMBER, 0xF6]) + b'1.5\x00' + bytes([Op.RET])
    assert decode_instructions(code, ['x']) == decode_instructions(code, ['x'])


def test_decode_function_warns_on_error():
    func = FunctionInfo('broken', 0, bytecode=bytes([Op.TYPE_NUMBER]))
    with pytest.warns(UserWarning, match='broken'):
        decode_function(func, [])
    assert func.instructions == []
    assert func.decode_error


def test_unknown_opcode_has_no_operand():
    instrs, _, err = decode_instructions(bytes([200, Op.RET]), [])
    assert err is None
    assert [i.name for i in instrs] == ['OP_200', 'RET']
    assert mnemonic(Op.TYPE_VAR) == 'TYPE_VAR'


@pytest.mark.parametrize('qualified, expected', [
    ('public.Player.onCreated', (True, 'Player', 'onCreated')),
    ('npc.onTimeout', (False, 'npc', 'onTimeout')),
    ('onCreated', (False, None, 'onCreated')),
    ('public.onCreated', (True, None, 'onCreated')),
])
def test_parse_function_name(qualified, expected):
    assert parse_function_name(qualified) == expected


def test_parameter_prologue():
    code = bytes([Op.SET_INDEX, 0x00, 0x05, Op.TYPE_ARRAY,
                  Op.TYPE_VAR, 0xF0, 0x00, Op.TYPE_VAR, 0xF0, 0x01,
                  Op.FUNC_PARAMS_END, Op.RET])
    instrs, _, _ = decode_instructions(code, ['a', 'b'])
    assert parse_parameter_prologue(instrs) == (['a', 'b'], 5)


def test_missing_prologue():
    instrs, _, _ = decode_instructions(bytes([Op.TYPE_ARRAY, Op.RET]), [])
    assert parse_parameter_prologue(instrs) == ([], None)


def test_fallback_line_format():
    instrs, _, _ = decode_instructions(
        bytes([Op.TYPE_STRING, 0xF0, 0x00, Op.TYPE_NUMBER, 0xF0, 0x07,
               Op.TYPE_NUMBER, 0xF0, 0x00, Op.RET]), ['hello'])
    assert [format_fallback_line(i) for i in instrs] == [
        'TYPE_STRING "hello"', 'TYPE_NUMBER 7', 'TYPE_NUMBER', 'RET']
