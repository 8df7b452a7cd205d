import sys

import pytest

from gs2_compiler import (
    BytecodeWriter, CodeBuilder, CompileError, CompilerResponse, Compiler,
    ExternalCompiler, get_default_compiler,
)
from gs2_decompiler import Op, BytecodeLoader, SegmentType


def test_number_operands_use_smallest_width():
    b = CodeBuilder()
    b.number(7)
    b.number(300)
    b.number(-200)
    b.number(1.5)
    assert b.to_bytes() == bytes([
        Op.TYPE_NUMBER, 0xF0, 0x07,
        Op.TYPE_NUMBER, 0xF1, 0x01, 0x2C,
        Op.TYPE_NUMBER, 0xF4, 0xFF, 0x38,
        Op.TYPE_NUMBER, 0xF6]) + b'1.5\x00'
    assert b.count == 4


def test_number_operand_limits():
    b = CodeBuilder()
    b.number(0xFFFFFFFF)
    b.number(-0x80000000)
    assert b.to_bytes() == bytes([
        Op.TYPE_NUMBER, 0xF2, 0xFF, 0xFF, 0xFF, 0xFF,
        Op.TYPE_NUMBER, 0xF5, 0x80, 0x00, 0x00, 0x00])
    for value in (True, False, 0x1_0000_0000, -0x80000001):
        with pytest.raises(ValueError):
            b.number(value)
    assert b.count == 2


def test_string_operands_are_indexed_through_writer(writer):
    b = writer.code_builder()
    b.string('hello')
    b.var('x')
    b.string('hello')
    assert writer.strings == ['hello', 'x']
    assert b.to_bytes() == bytes([
        Op.TYPE_STRING, 0xF0, 0x00, Op.TYPE_VAR, 0xF0, 0x01, Op.TYPE_STRING, 0xF0, 0x00])


def test_large_string_index_is_widened():
    b = CodeBuilder()
    b.var(0x1234)
    assert b.to_bytes() == bytes([Op.TYPE_VAR, 0xF1, 0x12, 0x34])


def test_jump_patching():
    b = CodeBuilder()
    j = b.jump(Op.IF)
    b.op(Op.TYPE_NULL)
    b.patch(j, b.count)
    assert b.to_bytes() == bytes([Op.IF, 0x00, 0x02, Op.TYPE_NULL])


def test_builder_rejects_wrong_operand_shapes():
    b = CodeBuilder()
    with pytest.raises(ValueError):
        b.op(Op.JMP)
    with pytest.raises(ValueError):
        b.jump(Op.RET)
    with pytest.raises(ValueError):
        b.string('needs a writer')


def test_writer_output_loads_back(writer):
    writer.set_gs1_flags(b'\x00\x01')
    writer.add_function('public.onCreated', bytes([Op.RET]))
    b = writer.code_builder()
    b.string('hi')
    b.op(Op.RET)
    writer.add_function('npc.onTimeout', b)

    loader = BytecodeLoader(writer.to_bytes())
    loader.parse()
    assert [s.type for s in loader.segments] == [
        SegmentType.GS1_FLAGS, SegmentType.FUNCTION_TABLE, SegmentType.STRING_TABLE, SegmentType.BYTECODE]
    assert loader.gs1_flags == b'\x00\x01'
    assert loader.string_table == ['hi']
    assert [(f.name, f.op_index, f.end_op_index) for f in loader.functions] == [
        ('public.onCreated', 0, 1), ('npc.onTimeout', 1, None)]
    assert loader.functions[1].instructions[0].text == 'hi'


def test_compile_error_text():
    assert str(CompileError('unexpected token')) == 'unexpected token'
    assert str(CompileError('unexpected token', line=4)) == 'line 4: unexpected token'


def test_default_compiler_comes_from_environment():
    assert get_default_compiler({}) is None
    assert get_default_compiler({'GS2_COMPILER': '  '}) is None
    compiler = get_default_compiler({'GS2_COMPILER': 'gs2c --stdin "-O 2"'})
    assert isinstance(compiler, ExternalCompiler)
    assert compiler.command == ['gs2c', '--stdin', '-O 2']


def test_external_compiler_returns_stdout():
    echo = ExternalCompiler([sys.executable, '-c',
                             'import sys; sys.stdout.buffer.write(sys.stdin.buffer.read()[::-1])'])
    response = echo.compile('abc')
    assert response.ok
    assert response.bytecode == b'cba'


def test_external_compiler_failure_reports_stderr_lines():
    failing = ExternalCompiler([sys.executable, '-c',
                                'import sys; sys.stderr.write("bad one\\n\\nbad two\\n"); sys.exit(3)'])
    response = failing.compile('x')
    assert not response.ok
    assert [str(e) for e in response.errors] == ['bad one', 'bad two']
    assert response.bytecode == b''


def test_external_compiler_silent_failure():
    failing = ExternalCompiler([sys.executable, '-c', 'import sys; sys.exit(5)'])
    assert [str(e) for e in failing.compile('').errors] == ['Compiler exited with status 5']


def test_missing_compiler_binary(tmp_path):
    response = ExternalCompiler([str(tmp_path / 'no-such-gs2c')]).compile('x')
    assert len(response.errors) == 1
    assert str(response.errors[0]).startswith('Cannot run compiler')


def test_compiler_interface():
    class Fixed(Compiler):
        def compile(self, source):
            return CompilerResponse(bytecode=source.encode())

    assert Fixed().compile('ok').bytecode == b'ok'
    with pytest.raises(TypeError):
        Compiler()
