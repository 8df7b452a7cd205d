import struct

import pytest

from conftest import seg, prologue, finish
from gs2_decompiler import (
    BytecodeLoader, Decompiler, SegmentType, Op,
    InvalidSegmentType, TruncatedSegment, InvalidFunctionTableEntry,
)


def _func_entry(op_index: int, name: str) -> bytes:
    return struct.pack('>I', op_index) + name.encode('latin-1') + b'\x00'


def test_empty_input_has_no_segments():
    loader = BytecodeLoader(b'')
    assert loader.load()
    assert loader.segments == []
    assert loader.functions == []


def test_segments_are_recorded_in_file_order():
    data = (seg(SegmentType.GS1_FLAGS, b'\x01\x02')
            + seg(SegmentType.STRING_TABLE, b'a\x00')
            + seg(SegmentType.BYTECODE, b''))
    loader = BytecodeLoader(data)
    loader.parse()
    assert [s.type for s in loader.segments] == [
        SegmentType.GS1_FLAGS, SegmentType.STRING_TABLE, SegmentType.BYTECODE]
    assert loader.segments[0].offset == 8
    assert loader.segments[1].offset == 18
    assert loader.gs1_flags == b'\x01\x02'


def test_invalid_segment_type():
    loader = BytecodeLoader(seg(9, b''))
    with pytest.raises(InvalidSegmentType):
        loader.parse()
    assert not loader.load()
    assert loader.error == 'Invalid segment type: 9'


def test_segment_past_end_of_file():
    data = struct.pack('>II', SegmentType.STRING_TABLE, 10) + b'ab'
    with pytest.raises(TruncatedSegment):
        BytecodeLoader(data).parse()


def test_partial_trailing_header_is_ignored():
    data = seg(SegmentType.STRING_TABLE, b'x\x00') + b'\x00\x00\x00'
    loader = BytecodeLoader(data)
    assert loader.load()
    assert loader.string_table == ['x']


def test_duplicate_segment_last_one_wins():
    data = seg(SegmentType.STRING_TABLE, b'a\x00') + seg(SegmentType.STRING_TABLE, b'b\x00c\x00')
    loader = BytecodeLoader(data)
    loader.parse()
    assert loader.string_table == ['b', 'c']
    assert len(loader.segments) == 2


def test_string_table_keeps_empty_strings():
    loader = BytecodeLoader(seg(SegmentType.STRING_TABLE, b'\x00foo\x00\x00'))
    loader.parse()
    assert loader.string_table == ['', 'foo', '']
    assert loader.get_string(1) == 'foo'
    assert loader.get_string(3) == ''
    assert loader.get_string(-1) == ''


def test_function_table_sorted_with_end_offsets():
    table = _func_entry(3, 'second') + _func_entry(0, 'first')
    code = bytes([Op.RET, Op.RET, Op.RET, Op.TYPE_TRUE, Op.RET])
    data = seg(SegmentType.FUNCTION_TABLE, table) + seg(SegmentType.BYTECODE, code)
    loader = BytecodeLoader(data)
    loader.parse()

    first, second = loader.functions
    assert (first.name, first.op_index, first.end_op_index) == ('first', 0, 3)
    assert (second.name, second.op_index, second.end_op_index) == ('second', 3, None)
    assert first.bytecode == bytes([Op.RET] * 3)
    assert second.bytecode == bytes([Op.TYPE_TRUE, Op.RET])
    assert [i.op for i in second.instructions] == [Op.TYPE_TRUE, Op.RET]


def test_slicing_does_not_depend_on_segment_order():
    table = seg(SegmentType.FUNCTION_TABLE, _func_entry(1, 'f'))
    code = seg(SegmentType.BYTECODE, bytes([Op.TYPE_NULL, Op.RET]))
    before = BytecodeLoader(code + table)
    after = BytecodeLoader(table + code)
    before.parse()
    after.parse()
    assert before.functions[0].bytecode == after.functions[0].bytecode == bytes([Op.RET])


def test_function_offset_past_segment_is_clamped():
    data = (seg(SegmentType.FUNCTION_TABLE, _func_entry(1000, 'far'))
            + seg(SegmentType.BYTECODE, bytes([Op.RET])))
    loader = BytecodeLoader(data)
    loader.parse()
    assert loader.functions[0].bytecode == b''
    assert loader.functions[0].instructions == []


def test_missing_bytecode_segment_gives_empty_functions():
    loader = BytecodeLoader(seg(SegmentType.FUNCTION_TABLE, _func_entry(0, 'f')))
    loader.parse()
    assert loader.functions[0].bytecode == b''


def test_function_entry_too_short():
    with pytest.raises(InvalidFunctionTableEntry):
        BytecodeLoader(seg(SegmentType.FUNCTION_TABLE, b'\x00\x00')).parse()


def test_function_name_without_terminator():
    data = seg(SegmentType.FUNCTION_TABLE, struct.pack('>I', 0) + b'abc')
    loader = BytecodeLoader(data)
    assert not loader.load()
    assert 'Invalid function table entry' in loader.error


def test_load_bytecode_reports_missing_file(tmp_path):
    decompiler = Decompiler()
    missing = tmp_path / 'nope.gs2bc'
    assert not decompiler.load_bytecode(missing)
    assert decompiler.error == f'Cannot open file: {missing}'
    assert decompiler.functions == []


def test_load_is_repeatable():
    data = seg(SegmentType.STRING_TABLE, b'a\x00')
    loader = BytecodeLoader(data)
    loader.parse()
    loader.parse()
    assert loader.string_table == ['a']
    assert len(loader.segments) == 1


def test_function_slices_cover_the_bytecode_segment(writer):
    writer.add_function('public.onCreated', bytes([Op.RET]))
    b = prologue(writer.code_builder(), 'a', 'b')
    b.var('a')
    b.number(70000)
    b.op(Op.ASSIGN)
    writer.add_function('npc.onTimeout', finish(b))
    writer.add_function('empty', b'')
    b = writer.code_builder()
    b.string('hi')
    b.number(-3)
    writer.add_function('Obj.last', b)

    loader = BytecodeLoader(writer.to_bytes())
    loader.parse()
    code = loader.bytecode_segment
    assert [f.name for f in loader.functions] == ['public.onCreated', 'npc.onTimeout', 'empty', 'Obj.last']
    assert b''.join(f.bytecode for f in loader.functions) == loader.data[code.offset:code.end]
    assert loader.functions[2].bytecode == b''
