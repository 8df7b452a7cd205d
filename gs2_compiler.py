import os
import shlex
import struct
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from gs2_decompiler import (
    Op, SegmentType, OperandKind, operand_kind, NUMBER_TEXT_PREFIX, DEFAULT_ENCODING
)

COMPILER_ENV = 'GS2_COMPILER'

def segment(seg_type: int, payload: bytes) -> bytes:
    return struct.pack('>II', int(seg_type), len(payload)) + payload

def _index_operand(index: int) -> bytes:
    if index < 0:
        raise ValueError(f'negative string index {index}')
    if index <= 0xFF:
        return struct.pack('>BB', 0xF0, index)
    if index <= 0xFFFF:
        return struct.pack('>BH', 0xF1, index)
    return struct.pack('>BI', 0xF2, index)

def _number_operand(value: Union[int, float, str]) -> bytes:
    if isinstance(value, bool):
        raise ValueError(f'Not a number operand: {value!r}')
    if isinstance(value, int):
        if value > 0xFFFFFFFF or value < -0x80000000:
            raise ValueError(f'Number operand out of range: {value}')
        if value >= 0:
            if value <= 0xFF:
                return struct.pack('>BB', 0xF0, value)
            if value <= 0xFFFF:
                return struct.pack('>BH', 0xF1, value)
            return struct.pack('>BI', 0xF2, value)
        if value >= -0x80:
            return struct.pack('>Bb', 0xF3, value)
        if value >= -0x8000:
            return struct.pack('>Bh', 0xF4, value)
        return struct.pack('>Bi', 0xF5, value)
    return bytes([NUMBER_TEXT_PREFIX]) + str(value).encode('ascii') + b'\x00'

class CodeBuilder:
    """Assembles one function body instruction by instruction.

    Jump offsets are counted in instructions, relative to the jump itself.
    """

    def __init__(self, writer: Optional['BytecodeWriter'] = None):
        self.writer = writer
        self._chunks: List[bytearray] = []

    def __len__(self):
        return len(self._chunks)

    @property
    def count(self) -> int:
        return len(self._chunks)

    def _emit(self, op: int, operand: bytes = b'') -> int:
        self._chunks.append(bytearray([int(op)]) + operand)
        return len(self._chunks) - 1

    def op(self, op: int) -> int:
        if operand_kind(op) is not OperandKind.NONE:
            raise ValueError(f'{Op(op).name} takes an operand')
        return self._emit(op)

    def number(self, value: Union[int, float, str]) -> int:
        return self._emit(Op.TYPE_NUMBER, _number_operand(value))

    def _string_index(self, value: Union[int, str]) -> int:
        if isinstance(value, int):
            return value
        if self.writer is None:
            raise ValueError('string operands by text need a BytecodeWriter')
        return self.writer.add_string(value)

    def string(self, value: Union[int, str]) -> int:
        return self._emit(Op.TYPE_STRING, _index_operand(self._string_index(value)))

    def var(self, value: Union[int, str]) -> int:
        return self._emit(Op.TYPE_VAR, _index_operand(self._string_index(value)))

    def jump(self, op: int, offset: int = 0) -> int:
        if operand_kind(op) is not OperandKind.JUMP:
            raise ValueError(f'{Op(op).name} is not a jump opcode')
        return self._emit(op, struct.pack('>h', offset))

    def patch(self, index: int, target: int):
        """Point the jump at ``index`` to instruction ``target``."""
        chunk = self._chunks[index]
        if operand_kind(chunk[0]) is not OperandKind.JUMP:
            raise ValueError(f'instruction {index} is not a jump')
        struct.pack_into('>h', chunk, 1, target - index)

    def raw(self, data: bytes) -> int:
        self._chunks.append(bytearray(data))
        return len(self._chunks) - 1

    def to_bytes(self) -> bytes:
        return b''.join(bytes(c) for c in self._chunks)

class BytecodeWriter:

    def __init__(self, encoding: str = DEFAULT_ENCODING):
        self.encoding = encoding
        self.gs1_flags: Optional[bytes] = None
        self.functions: List[Tuple[str, bytes]] = []
        self.strings: List[str] = []
        self._string_index: Dict[str, int] = {}

    def set_gs1_flags(self, flags: bytes):
        self.gs1_flags = bytes(flags)

    def add_string(self, value: str) -> int:
        index = self._string_index.get(value)
        if index is None:
            index = len(self.strings)
            self.strings.append(value)
            self._string_index[value] = index
        return index

    def add_function(self, name: str, code: Union[bytes, CodeBuilder]):
        if isinstance(code, CodeBuilder):
            code = code.to_bytes()
        self.functions.append((name, bytes(code)))

    def code_builder(self) -> CodeBuilder:
        return CodeBuilder(self)

    def to_bytes(self) -> bytes:
        table = bytearray()
        bytecode = bytearray()
        for name, code in self.functions:
            table += struct.pack('>I', len(bytecode))
            table += name.encode(self.encoding) + b'\x00'
            bytecode += code

        strings = b''.join(s.encode(self.encoding) + b'\x00' for s in self.strings)

        out = bytearray()
        if self.gs1_flags is not None:
            out += segment(SegmentType.GS1_FLAGS, self.gs1_flags)
        out += segment(SegmentType.FUNCTION_TABLE, bytes(table))
        out += segment(SegmentType.STRING_TABLE, strings)
        out += segment(SegmentType.BYTECODE, bytes(bytecode))
        return bytes(out)

@dataclass
class CompileError:
    message: str
    line: Optional[int] = None

    def __str__(self):
        if self.line is not None:
            return f'line {self.line}: {self.message}'
        return self.message

@dataclass
class CompilerResponse:
    bytecode: bytes = b''
    errors: List[CompileError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

class Compiler(ABC):

    @abstractmethod
    def compile(self, source: str) -> CompilerResponse:
        pass

class ExternalCompiler(Compiler):
    """Runs an external command: source on stdin, bytecode on stdout."""

    def __init__(self, command, encoding: str = DEFAULT_ENCODING, timeout: Optional[float] = None):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.encoding = encoding
        self.timeout = timeout

    def compile(self, source: str) -> CompilerResponse:
        try:
            proc = subprocess.run(
                self.command,
                input=source.encode(self.encoding, errors='replace'),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            return CompilerResponse(errors=[CompileError(f'Cannot run compiler {self.command[0]!r}: {e}')])

        if proc.returncode != 0:
            stderr = proc.stderr.decode(self.encoding, errors='replace')
            errors = [CompileError(line.strip()) for line in stderr.splitlines() if line.strip()]
            if not errors:
                errors = [CompileError(f'Compiler exited with status {proc.returncode}')]
            return CompilerResponse(errors=errors)

        return CompilerResponse(bytecode=proc.stdout)

def get_default_compiler(environ=None) -> Optional[Compiler]:
    environ = os.environ if environ is None else environ
    command = environ.get(COMPILER_ENV, '').strip()
    if not command:
        return None
    return ExternalCompiler(command)
