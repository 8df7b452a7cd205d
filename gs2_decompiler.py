import argparse
import os
import pathlib
import struct
import sys
import time
import warnings
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Set, Union
from enum import Enum, IntEnum, auto
from abc import ABC, abstractmethod

from gs2_formatting import format_source

DEFAULT_ENCODING = 'latin-1'
BYTECODE_EXT = '.gs2bc'
SOURCE_EXT = '.gs2'
SOURCE_EXTS = ('.gs2', '.txt')

class Op(IntEnum):
    NONE = 0
    SET_INDEX = 1; JMP = 2; IF = 3; AND = 4; OR = 5; CALL = 6; RET = 7
    SLEEP = 8; CMD_CALL = 9; WAITFOR = 10; SET_INDEX_TRUE = 11
    TYPE_NUMBER = 20; TYPE_STRING = 21; TYPE_VAR = 22; TYPE_ARRAY = 23
    TYPE_TRUE = 24; TYPE_FALSE = 25; TYPE_NULL = 26; PI = 27
    COPY_LAST_OP = 30; SWAP_LAST_OPS = 31; INDEX_DEC = 32
    CONV_TO_FLOAT = 33; CONV_TO_STRING = 34; MEMBER_ACCESS = 35
    CONV_TO_OBJECT = 36; ARRAY_END = 37; ARRAY_NEW = 38; SETARRAY = 39
    INLINE_NEW = 40; MAKEVAR = 41; NEW_OBJECT = 42
    INLINE_CONDITIONAL = 49
    ASSIGN = 50; FUNC_PARAMS_END = 51; INC = 52; DEC = 53
    ADD = 60; SUB = 61; MUL = 62; DIV = 63; MOD = 64; POW = 65
    NOT = 68; UNARYSUB = 69
    EQ = 70; NEQ = 71; LT = 72; GT = 73; LTE = 74; GTE = 75
    BWO = 76; BWA = 77; BW_XOR = 78; BW_INVERT = 79
    IN_RANGE = 80; IN_OBJ = 81; OBJ_INDEX = 82; OBJ_TYPE = 83; FORMAT = 84
    INT = 85; ABS = 86; RANDOM = 87; SIN = 88; COS = 89; ARCTAN = 90
    EXP = 91; LOG = 92; MIN = 93; MAX = 94; GETANGLE = 95; GETDIR = 96
    VECX = 97; VECY = 98; OBJ_INDICES = 99; OBJ_LINK = 100; CHAR = 101
    OBJ_TRIM = 110; OBJ_LENGTH = 111; OBJ_POS = 112; JOIN = 113
    OBJ_CHARAT = 114; OBJ_SUBSTR = 115; OBJ_STARTS = 116; OBJ_ENDS = 117
    OBJ_TOKENIZE = 118; TRANSLATE = 119; OBJ_POSITIONS = 120
    OBJ_SIZE = 130; ARRAY = 131; ARRAY_ASSIGN = 132; ARRAY_MULTIDIM = 133
    ARRAY_MULTIDIM_ASSIGN = 134; OBJ_SUBARRAY = 135; OBJ_ADDSTRING = 136
    OBJ_DELETESTRING = 137; OBJ_REMOVESTRING = 138; OBJ_REPLACESTRING = 139
    OBJ_INSERTSTRING = 140; OBJ_CLEAR = 141; ARRAY_NEW_MULTIDIM = 142
    WITH = 150; WITHEND = 151
    FOREACH = 163
    THIS = 180; THISO = 181; PLAYER = 182; PLAYERO = 183; LEVEL = 184
    TEMP = 189; PARAMS = 190

class SegmentType(IntEnum):
    GS1_FLAGS = 1; FUNCTION_TABLE = 2; STRING_TABLE = 3; BYTECODE = 4

class OperandKind(Enum):
    NONE = auto()
    JUMP = auto()
    NUMBER = auto()
    STRING = auto()

OPERAND_SHAPES: Dict[int, OperandKind] = {
    Op.SET_INDEX: OperandKind.JUMP, Op.SET_INDEX_TRUE: OperandKind.JUMP,
    Op.JMP: OperandKind.JUMP, Op.IF: OperandKind.JUMP,
    Op.AND: OperandKind.JUMP, Op.OR: OperandKind.JUMP,
    Op.WITH: OperandKind.JUMP, Op.WITHEND: OperandKind.JUMP,
    Op.FOREACH: OperandKind.JUMP,
    Op.TYPE_NUMBER: OperandKind.NUMBER,
    Op.TYPE_STRING: OperandKind.STRING, Op.TYPE_VAR: OperandKind.STRING,
}

# Jump-carrying opcodes whose offset is a real control transfer.
BRANCH_OPS = frozenset({
    Op.JMP, Op.IF, Op.AND, Op.OR, Op.SET_INDEX, Op.SET_INDEX_TRUE,
})

NUMBER_TEXT_PREFIX = 0xF6

def operand_kind(op: int) -> OperandKind:
    return OPERAND_SHAPES.get(op, OperandKind.NONE)

def mnemonic(op: int) -> str:
    try:
        return Op(op).name
    except ValueError:
        return f'OP_{op}'

class GS2Error(Exception):
    pass

class BytecodeError(GS2Error):
    pass

class CannotOpenFile(BytecodeError):
    pass

class InvalidSegmentType(BytecodeError):
    pass

class TruncatedSegment(BytecodeError):
    pass

class InvalidFunctionTableEntry(BytecodeError):
    pass

class UnreadableOperand(GS2Error):
    pass

class ReconstructionError(GS2Error):
    """Raised when a function's instructions cannot be rebuilt into statements."""

@dataclass
class Segment:
    type: SegmentType
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

@dataclass
class Instruction:
    index: int
    addr: int
    op: int
    size: int
    operand: Optional[int] = None
    text: Optional[str] = None

    @property
    def name(self) -> str:
        return mnemonic(self.op)

    def branch_target(self) -> Optional[int]:
        if operand_kind(self.op) is not OperandKind.JUMP or self.operand is None:
            return None
        return self.index + self.operand

@dataclass
class FunctionInfo:
    name: str
    op_index: int
    end_op_index: Optional[int] = None
    bytecode: bytes = b''
    instructions: List[Instruction] = field(default_factory=list)
    jump_targets: Set[int] = field(default_factory=set)
    decode_error: Optional[str] = None

    def out_of_range_targets(self) -> Set[int]:
        n = len(self.instructions)
        return {t for t in self.jump_targets if t < 0 or t >= n}

class ValueKind(Enum):
    NUMBER = auto()
    STRING = auto()
    VAR = auto()
    ARRAY = auto()
    OBJECT = auto()
    BOOLEAN = auto()
    NULL = auto()
    UNKNOWN = auto()

BINARY_OP_SYMBOLS = {
    Op.ADD: '+', Op.SUB: '-', Op.MUL: '*', Op.DIV: '/', Op.MOD: '%', Op.POW: '^',
    Op.EQ: '==', Op.NEQ: '!=', Op.LT: '<', Op.GT: '>', Op.LTE: '<=', Op.GTE: '>=',
    Op.BWO: '|', Op.BWA: '&', Op.BW_XOR: 'xor', Op.IN_OBJ: 'in', Op.JOIN: '@',
}

UNARY_OP_SYMBOLS = {
    Op.NOT: '!', Op.UNARYSUB: '-', Op.BW_INVERT: '~',
}

OP_PRECEDENCE = {
    '||': 1, '&&': 2, 'in': 3,
    '==': 4, '!=': 4,
    '<': 5, '>': 5, '<=': 5, '>=': 5,
    '|': 6, 'xor': 7, '&': 8, '@': 9,
    '+': 10, '-': 10, '*': 11, '/': 11, '%': 11, '^': 12,
}

RIGHT_ASSOC_OPS = frozenset({'^'})

# builtin opcode -> (function name, argument count)
BUILTIN_FUNCS = {
    Op.INT: ('int', 1), Op.ABS: ('abs', 1), Op.RANDOM: ('random', 2),
    Op.SIN: ('sin', 1), Op.COS: ('cos', 1), Op.ARCTAN: ('arctan', 1),
    Op.EXP: ('exp', 1), Op.LOG: ('log', 2), Op.MIN: ('min', 2), Op.MAX: ('max', 2),
    Op.GETANGLE: ('getangle', 2), Op.GETDIR: ('getdir', 2),
    Op.VECX: ('vecx', 1), Op.VECY: ('vecy', 1), Op.CHAR: ('char', 1),
    Op.SLEEP: ('sleep', 1),
}

# object method opcode -> (method name, argument count excluding the object)
OBJECT_METHODS = {
    Op.OBJ_TRIM: ('trim', 0), Op.OBJ_LENGTH: ('length', 0), Op.OBJ_SIZE: ('size', 0),
    Op.OBJ_TYPE: ('type', 0), Op.OBJ_LINK: ('link', 0), Op.OBJ_CLEAR: ('clear', 0),
    Op.OBJ_INDICES: ('indices', 0),
    Op.OBJ_INDEX: ('index', 1), Op.OBJ_POS: ('pos', 1), Op.OBJ_CHARAT: ('charat', 1),
    Op.OBJ_STARTS: ('starts', 1), Op.OBJ_ENDS: ('ends', 1),
    Op.OBJ_TOKENIZE: ('tokenize', 1), Op.OBJ_POSITIONS: ('positions', 1),
    Op.OBJ_ADDSTRING: ('add', 1), Op.OBJ_DELETESTRING: ('delete', 1),
    Op.OBJ_REMOVESTRING: ('remove', 1),
    Op.OBJ_SUBSTR: ('substring', 2), Op.OBJ_SUBARRAY: ('subarray', 2),
    Op.OBJ_REPLACESTRING: ('replace', 2), Op.OBJ_INSERTSTRING: ('insert', 2),
}

KEYWORD_OPS = {
    Op.TYPE_TRUE: ('true', ValueKind.BOOLEAN), Op.TYPE_FALSE: ('false', ValueKind.BOOLEAN),
    Op.TYPE_NULL: ('null', ValueKind.NULL), Op.PI: ('pi', ValueKind.NUMBER),
    Op.THIS: ('this', ValueKind.OBJECT), Op.THISO: ('thiso', ValueKind.OBJECT),
    Op.PLAYER: ('player', ValueKind.OBJECT), Op.PLAYERO: ('playero', ValueKind.OBJECT),
    Op.LEVEL: ('level', ValueKind.OBJECT), Op.TEMP: ('temp', ValueKind.OBJECT),
    Op.PARAMS: ('params', ValueKind.ARRAY),
}

PASSTHROUGH_OPS = frozenset({Op.CONV_TO_FLOAT, Op.CONV_TO_STRING, Op.CONV_TO_OBJECT})

class Expr(ABC):
    kind = ValueKind.UNKNOWN
    assignable = False

    @abstractmethod
    def to_source(self) -> str:
        pass

    def precedence(self) -> int:
        return 100

def _escape_str_literal(s: str) -> str:
    escaped = s.replace('\\', '\\\\').replace('"', '\\"')
    escaped = escaped.replace('\n', '\\n').replace('\r', '\\r').replace('\t', '\\t')
    result = []
    for ch in escaped:
        cp = ord(ch)
        if cp < 0x20:
            result.append(f'\\x{cp:02X}')
        else:
            result.append(ch)
    return ''.join(result)

def _is_identifier(s: str) -> bool:
    return bool(s) and s.replace('_', 'a').isalnum() and not s[0].isdigit()

@dataclass
class NumberExpr(Expr):
    value: str
    kind = ValueKind.NUMBER

    def to_source(self) -> str:
        return self.value

@dataclass
class StringExpr(Expr):
    value: str
    kind = ValueKind.STRING

    def to_source(self) -> str:
        return f'"{_escape_str_literal(self.value)}"'

@dataclass
class VarExpr(Expr):
    name: str
    kind = ValueKind.VAR
    assignable = True

    def to_source(self) -> str:
        return self.name

@dataclass
class KeywordExpr(Expr):
    word: str
    value_kind: ValueKind = ValueKind.UNKNOWN

    @property
    def kind(self) -> ValueKind:
        return self.value_kind

    def to_source(self) -> str:
        return self.word

def _name_of(expr: Expr) -> Optional[str]:
    if isinstance(expr, VarExpr):
        return expr.name
    if isinstance(expr, StringExpr) and _is_identifier(expr.value):
        return expr.value
    return None

def _wrap_operand(expr: Expr) -> str:
    src = expr.to_source()
    if isinstance(expr, (BinaryExpr, UnaryExpr, InRangeExpr, AssignExpr)):
        return f'({src})'
    return src

@dataclass
class MemberExpr(Expr):
    obj: Expr
    member: Expr
    assignable = True

    def to_source(self) -> str:
        obj_src = _wrap_operand(self.obj)
        name = _name_of(self.member)
        if name is not None:
            return f'{obj_src}.{name}'
        return f'{obj_src}.({self.member.to_source()})'

@dataclass
class IndexExpr(Expr):
    array: Expr
    index: Expr
    assignable = True

    def to_source(self) -> str:
        return f'{_wrap_operand(self.array)}[{self.index.to_source()}]'

@dataclass
class BinaryExpr(Expr):
    left: Expr
    op: str
    right: Expr

    @property
    def kind(self) -> ValueKind:
        if self.op in ('==', '!=', '<', '>', '<=', '>=', '&&', '||', 'in'):
            return ValueKind.BOOLEAN
        if self.op == '@':
            return ValueKind.STRING
        return ValueKind.NUMBER

    def to_source(self) -> str:
        left_src = self._wrap_if_needed(self.left, 'left')
        right_src = self._wrap_if_needed(self.right, 'right')
        return f'{left_src} {self.op} {right_src}'

    def _wrap_if_needed(self, expr: Expr, side: str) -> str:
        src = expr.to_source()
        if isinstance(expr, BinaryExpr):
            my_prec = OP_PRECEDENCE.get(self.op, 0)
            expr_prec = OP_PRECEDENCE.get(expr.op, 0)
            inner_side = 'left' if self.op in RIGHT_ASSOC_OPS else 'right'
            if expr_prec < my_prec or (expr_prec == my_prec and side == inner_side):
                return f'({src})'
        if isinstance(expr, (AssignExpr, InRangeExpr)):
            return f'({src})'
        return src

    def precedence(self) -> int:
        return OP_PRECEDENCE.get(self.op, 0)

@dataclass
class UnaryExpr(Expr):
    op: str
    operand: Expr
    prefix: bool = True

    def to_source(self) -> str:
        src = self.operand.to_source()
        if isinstance(self.operand, (BinaryExpr, InRangeExpr, AssignExpr)):
            src = f'({src})'
        elif self.prefix and isinstance(self.operand, UnaryExpr) and self.operand.prefix:
            if self.op == '-' and self.operand.op == '-':
                src = f'({src})'
        if self.prefix:
            return f'{self.op}{src}'
        return f'{src}{self.op}'

@dataclass
class InRangeExpr(Expr):
    value: Expr
    low: Expr
    high: Expr
    kind = ValueKind.BOOLEAN

    def to_source(self) -> str:
        return f'{_wrap_operand(self.value)} in |{self.low.to_source()}, {self.high.to_source()}|'

def _args_source(args: List[Expr]) -> str:
    return ', '.join(a.to_source() for a in args)

@dataclass
class CallExpr(Expr):
    func: Expr
    args: List[Expr]

    def to_source(self) -> str:
        name = _name_of(self.func)
        func_src = name if name is not None else _wrap_operand(self.func)
        return f'{func_src}({_args_source(self.args)})'

@dataclass
class MethodCallExpr(Expr):
    obj: Expr
    method: str
    args: List[Expr]

    def to_source(self) -> str:
        return f'{_wrap_operand(self.obj)}.{self.method}({_args_source(self.args)})'

@dataclass
class NewExpr(Expr):
    type_name: Expr
    args: List[Expr]
    kind = ValueKind.OBJECT

    def to_source(self) -> str:
        name = _name_of(self.type_name)
        type_src = name if name is not None else self.type_name.to_source()
        return f'new {type_src}({_args_source(self.args)})'

@dataclass
class NewArrayExpr(Expr):
    sizes: List[Expr]
    kind = ValueKind.ARRAY

    def to_source(self) -> str:
        return 'new' + ''.join(f'[{s.to_source()}]' for s in self.sizes)

@dataclass
class ArrayExpr(Expr):
    elements: List[Expr]
    kind = ValueKind.ARRAY

    def to_source(self) -> str:
        return '{' + _args_source(self.elements) + '}'

@dataclass
class AssignExpr(Expr):
    target: Expr
    value: Expr
    op: str = '='

    def to_source(self) -> str:
        return f'{self.target.to_source()} {self.op} {self.value.to_source()}'

class Stmt(ABC):
    @abstractmethod
    def to_source(self, indent: int = 0) -> str:
        pass

@dataclass
class ExprStmt(Stmt):
    expr: Expr

    def to_source(self, indent: int = 0) -> str:
        return '    ' * indent + self.expr.to_source() + ';'

@dataclass
class CommentStmt(Stmt):
    text: str

    def to_source(self, indent: int = 0) -> str:
        return '    ' * indent + '// ' + self.text

@dataclass
class ReturnStmt(Stmt):
    value: Optional[Expr] = None

    def to_source(self, indent: int = 0) -> str:
        prefix = '    ' * indent + 'return'
        if self.value is not None:
            return prefix + f' {self.value.to_source()};'
        return prefix + ';'

def _block_lines(stmts: List[Stmt], indent: int) -> List[str]:
    return [stmt.to_source(indent) for stmt in stmts]

@dataclass
class IfStmt(Stmt):
    condition: Expr
    then_body: List[Stmt]
    else_body: List[Stmt] = field(default_factory=list)

    def to_source(self, indent: int = 0) -> str:
        prefix = '    ' * indent
        lines = [f'{prefix}if ({self.condition.to_source()}) {{']
        lines.extend(_block_lines(self.then_body, indent + 1))
        if self.else_body:
            if len(self.else_body) == 1 and isinstance(self.else_body[0], IfStmt):
                lines.append(f'{prefix}}} else ' + self.else_body[0].to_source(indent).lstrip())
                return '\n'.join(lines)
            lines.append(f'{prefix}}} else {{')
            lines.extend(_block_lines(self.else_body, indent + 1))
        lines.append(f'{prefix}}}')
        return '\n'.join(lines)

@dataclass
class WhileStmt(Stmt):
    condition: Expr
    body: List[Stmt]

    def to_source(self, indent: int = 0) -> str:
        prefix = '    ' * indent
        lines = [f'{prefix}while ({self.condition.to_source()}) {{']
        lines.extend(_block_lines(self.body, indent + 1))
        lines.append(f'{prefix}}}')
        return '\n'.join(lines)

@dataclass
class ForEachStmt(Stmt):
    var: Expr
    collection: Expr
    body: List[Stmt]

    def to_source(self, indent: int = 0) -> str:
        prefix = '    ' * indent
        lines = [f'{prefix}for ({self.var.to_source()} : {self.collection.to_source()}) {{']
        lines.extend(_block_lines(self.body, indent + 1))
        lines.append(f'{prefix}}}')
        return '\n'.join(lines)

@dataclass
class WithStmt(Stmt):
    expr: Expr
    body: List[Stmt]

    def to_source(self, indent: int = 0) -> str:
        prefix = '    ' * indent
        lines = [f'{prefix}with ({self.expr.to_source()}) {{']
        lines.extend(_block_lines(self.body, indent + 1))
        lines.append(f'{prefix}}}')
        return '\n'.join(lines)

@dataclass
class BreakStmt(Stmt):
    def to_source(self, indent: int = 0) -> str:
        return '    ' * indent + 'break;'

@dataclass
class ContinueStmt(Stmt):
    def to_source(self, indent: int = 0) -> str:
        return '    ' * indent + 'continue;'

def _read_cstring(data: bytes, pos: int, end: int) -> Tuple[bytes, int, bool]:
    """Read a NUL-terminated string from data[pos:end].

    Returns the raw bytes, the position after the terminator and whether a
    terminator was found before ``end``.
    """
    nul = data.find(b'\x00', pos, end)
    if nul < 0:
        return data[pos:end], end, False
    return data[pos:nul], nul + 1, True

class BytecodeLoader:

    def __init__(self, data: bytes, encoding: str = DEFAULT_ENCODING):
        self.data = bytes(data)
        self.encoding = encoding
        self.segments: List[Segment] = []
        self.gs1_flags: bytes = b''
        self.functions: List[FunctionInfo] = []
        self.string_table: List[str] = []
        self.bytecode_segment: Optional[Segment] = None
        self.error = ''

    def read_u32(self, pos: int) -> int:
        return struct.unpack_from('>I', self.data, pos)[0]

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self.encoding, errors='replace')

    def load(self) -> bool:
        try:
            self.parse()
            return True
        except BytecodeError as e:
            self.error = str(e)
            return False

    def parse(self):
        self.segments = []
        self.gs1_flags = b''
        self.functions = []
        self.string_table = []
        self.bytecode_segment = None
        self.error = ''

        self._scan_segments()
        self._slice_functions()
        for func in self.functions:
            decode_function(func, self.string_table)

    def _scan_segments(self):
        pos = 0
        size = len(self.data)
        while pos + 8 <= size:
            seg_type = self.read_u32(pos)
            seg_length = self.read_u32(pos + 4)
            pos += 8

            if seg_type not in SegmentType._value2member_map_:
                raise InvalidSegmentType(f'Invalid segment type: {seg_type}')
            if pos + seg_length > size:
                raise TruncatedSegment(
                    f'Segment extends beyond file bounds (offset {pos}, length {seg_length}, file size {size})')

            segment = Segment(SegmentType(seg_type), pos, seg_length)
            self.segments.append(segment)

            if segment.type == SegmentType.GS1_FLAGS:
                self.gs1_flags = self.data[pos:segment.end]
            elif segment.type == SegmentType.FUNCTION_TABLE:
                self.functions = self._parse_function_table(segment)
            elif segment.type == SegmentType.STRING_TABLE:
                self.string_table = self._parse_string_table(segment)
            elif segment.type == SegmentType.BYTECODE:
                self.bytecode_segment = segment

            pos = segment.end

    def _parse_function_table(self, segment: Segment) -> List[FunctionInfo]:
        functions = []
        pos = segment.offset
        while pos < segment.end:
            if pos + 4 > segment.end:
                raise InvalidFunctionTableEntry(f'Invalid function table entry at offset {pos}')
            op_index = self.read_u32(pos)
            pos += 4
            raw, pos, terminated = _read_cstring(self.data, pos, segment.end)
            if not terminated:
                raise InvalidFunctionTableEntry(f'Invalid function table entry at offset {pos}: unterminated name')
            functions.append(FunctionInfo(name=self._decode(raw), op_index=op_index))

        functions.sort(key=lambda f: f.op_index)
        for i, func in enumerate(functions):
            func.end_op_index = functions[i + 1].op_index if i + 1 < len(functions) else None
        return functions

    def _parse_string_table(self, segment: Segment) -> List[str]:
        strings = []
        pos = segment.offset
        while pos < segment.end:
            raw, pos, _ = _read_cstring(self.data, pos, segment.end)
            strings.append(self._decode(raw))
        return strings

    def _slice_functions(self):
        size = len(self.data)
        seg = self.bytecode_segment
        for func in self.functions:
            if seg is None:
                func.bytecode = b''
                continue
            start = seg.offset + func.op_index
            end = seg.offset + (func.end_op_index if func.end_op_index is not None else seg.length)
            start = min(max(start, 0), size)
            end = min(max(end, 0), size)
            func.bytecode = self.data[start:end] if start <= end else b''

    def get_string(self, index: int) -> str:
        if 0 <= index < len(self.string_table):
            return self.string_table[index]
        return ''

_UNSIGNED_FORMATS = {1: '>B', 2: '>H', 4: '>I'}
_SIGNED_FORMATS = {1: '>b', 2: '>h', 4: '>i'}

def _read_int(code: bytes, pos: int, width: int, signed: bool) -> int:
    if pos + width > len(code):
        raise UnreadableOperand(f'unreadable operand at offset {pos}: need {width} bytes, {len(code) - pos} left')
    fmt = _SIGNED_FORMATS[width] if signed else _UNSIGNED_FORMATS[width]
    return struct.unpack_from(fmt, code, pos)[0]

def _read_prefix(code: bytes, pos: int) -> int:
    if pos >= len(code):
        raise UnreadableOperand(f'unreadable operand at offset {pos}: missing prefix byte')
    return code[pos]

def decode_instructions(code: bytes, strings: List[str]) -> Tuple[List[Instruction], Set[int], Optional[str]]:
    instructions: List[Instruction] = []
    targets: Set[int] = set()
    pos = 0
    while pos < len(code):
        addr = pos
        op = code[pos]
        pos += 1
        operand = None
        text = None
        kind = operand_kind(op)
        try:
            if kind is OperandKind.JUMP:
                operand = _read_int(code, pos, 2, signed=True)
                pos += 2
                if op in BRANCH_OPS:
                    targets.add(len(instructions) + operand)

            elif kind is OperandKind.NUMBER:
                prefix = _read_prefix(code, pos)
                pos += 1
                if prefix == NUMBER_TEXT_PREFIX:
                    raw, pos, terminated = _read_cstring(code, pos, len(code))
                    if not terminated:
                        raise UnreadableOperand(f'unreadable operand at offset {addr}: unterminated number text')
                    text = raw.decode('ascii', errors='replace')
                elif 0xF0 <= prefix <= 0xF5:
                    width = 1 << (prefix % 3)
                    operand = _read_int(code, pos, width, signed=prefix >= 0xF3)
                    pos += width
                else:
                    raise UnreadableOperand(f'unreadable operand at offset {addr}: bad number prefix 0x{prefix:02X}')

            elif kind is OperandKind.STRING:
                prefix = _read_prefix(code, pos)
                pos += 1
                if not 0xF0 <= prefix <= 0xF2:
                    raise UnreadableOperand(f'unreadable operand at offset {addr}: bad string index prefix 0x{prefix:02X}')
                width = 1 << (prefix - 0xF0)
                operand = _read_int(code, pos, width, signed=False)
                pos += width
                text = strings[operand] if operand < len(strings) else ''
        except UnreadableOperand as e:
            return instructions, targets, str(e)

        instructions.append(Instruction(len(instructions), addr, op, pos - addr, operand, text))
    return instructions, targets, None

def decode_function(func: FunctionInfo, strings: List[str]) -> FunctionInfo:
    func.instructions, func.jump_targets, func.decode_error = decode_instructions(func.bytecode, strings)
    if func.decode_error:
        warnings.warn(f'{func.name}: {func.decode_error}')
    return func

def parse_function_name(qualified: str) -> Tuple[bool, Optional[str], str]:
    """Split ``public.Object.name`` style names into (public, object, name)."""
    parts = qualified.split('.')
    if len(parts) == 1:
        return False, None, qualified
    if parts[0] == 'public':
        if len(parts) >= 3:
            return True, parts[1] or None, '.'.join(parts[2:])
        return True, None, parts[1]
    return False, parts[0] or None, '.'.join(parts[1:])

def parse_parameter_prologue(instructions: List[Instruction]) -> Tuple[List[str], Optional[int]]:
    """Return the parameter names and the index of the first body instruction.

    The body index is None when the function does not open with a
    ``TYPE_ARRAY (TYPE_VAR)* FUNC_PARAMS_END`` prologue.
    """
    n = len(instructions)
    i = 0
    if i < n and instructions[i].op == Op.SET_INDEX:
        i += 1
    if i >= n or instructions[i].op != Op.TYPE_ARRAY:
        return [], None
    i += 1
    params = []
    while i < n and instructions[i].op == Op.TYPE_VAR:
        params.append(instructions[i].text or f'param{len(params)}')
        i += 1
    if i >= n or instructions[i].op != Op.FUNC_PARAMS_END:
        return [], None
    return params, i + 1

def format_fallback_line(instr: Instruction) -> str:
    line = instr.name
    if instr.text:
        line += f' "{instr.text}"'
    elif instr.operand:
        line += f' {instr.operand}'
    return line

def fallback_body(func: FunctionInfo) -> List[Stmt]:
    stmts: List[Stmt] = [CommentStmt(format_fallback_line(instr)) for instr in func.instructions]
    if func.decode_error:
        stmts.append(CommentStmt(func.decode_error))
    return stmts

class _ArgsMarker:
    """Stack entry pushed by TYPE_ARRAY to delimit variable-length argument lists."""

    def __repr__(self):
        return '<args>'

StackEntry = Union[Expr, _ArgsMarker]

class Decompiler:

    def __init__(self, loader: Optional[BytecodeLoader] = None, reconstruct: bool = True):
        self.loader = loader
        self.reconstruct = reconstruct
        self.error = ''

    def load_bytecode(self, filename, encoding: str = DEFAULT_ENCODING) -> bool:
        self.loader = None
        self.error = ''
        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError:
            self.error = str(CannotOpenFile(f'Cannot open file: {filename}'))
            return False
        return self.load_bytes(data, encoding)

    def load_bytes(self, data: bytes, encoding: str = DEFAULT_ENCODING) -> bool:
        self.loader = None
        self.error = ''
        loader = BytecodeLoader(data, encoding)
        if not loader.load():
            self.error = loader.error
            return False
        self.loader = loader
        return True

    @property
    def functions(self) -> List[FunctionInfo]:
        return self.loader.functions if self.loader else []

    def decompile(self) -> str:
        blocks = [self._decompile_function(func) for func in self.functions]
        if not blocks:
            return ''
        return '\n\n'.join(blocks) + '\n'

    def _decompile_function(self, func: FunctionInfo) -> str:
        is_public, obj_name, name = parse_function_name(func.name)
        params, body_start = parse_parameter_prologue(func.instructions)

        stmts = None
        if self.reconstruct and body_start is not None and func.decode_error is None:
            try:
                stmts = self._decompile_instructions(func, body_start)
            except ReconstructionError:
                stmts = None
        if stmts is None:
            stmts = fallback_body(func)

        decl = 'public ' if is_public else ''
        qualified = f'{obj_name}.{name}' if obj_name else name
        decl += f'function {qualified}({", ".join(params)}) {{'
        lines = [decl]
        lines.extend(stmt.to_source(1) for stmt in stmts)
        lines.append('}')
        return '\n'.join(lines)

    def _decompile_instructions(self, func: FunctionInfo, start: int) -> List[Stmt]:
        """Straight-line reconstruction; any jump-carrying opcode aborts it."""
        stack: List[StackEntry] = []
        stmts: List[Stmt] = []
        for instr in func.instructions[start:]:
            self._translate_instruction(instr, stack, stmts)
        self._flush_stack(stack, stmts)
        return self._strip_implicit_return(stmts)

    @staticmethod
    def _strip_implicit_return(stmts: List[Stmt]) -> List[Stmt]:
        if stmts and isinstance(stmts[-1], ReturnStmt):
            value = stmts[-1].value
            if value is None or (isinstance(value, NumberExpr) and value.value == '0'):
                stmts.pop()
        return stmts

    def _pop(self, stack: List[StackEntry]) -> Expr:
        if not stack:
            raise ReconstructionError('operand stack underflow')
        entry = stack.pop()
        if isinstance(entry, _ArgsMarker):
            raise ReconstructionError('argument marker consumed as a value')
        return entry

    def _pop_n(self, stack: List[StackEntry], count: int) -> List[Expr]:
        values = [self._pop(stack) for _ in range(count)]
        values.reverse()
        return values

    def _pop_args(self, stack: List[StackEntry]) -> List[Expr]:
        args = []
        while True:
            if not stack:
                raise ReconstructionError('argument list without TYPE_ARRAY marker')
            entry = stack.pop()
            if isinstance(entry, _ArgsMarker):
                break
            args.append(entry)
        args.reverse()
        return args

    def _flush_stack(self, stack: List[StackEntry], stmts: List[Stmt]):
        for entry in stack:
            if isinstance(entry, _ArgsMarker):
                raise ReconstructionError('unterminated argument list')
            stmts.append(ExprStmt(entry))
        stack.clear()

    def _translate_instruction(self, instr: Instruction, stack: List[StackEntry], stmts: List[Stmt]):
        op = instr.op

        if operand_kind(op) is OperandKind.JUMP:
            raise ReconstructionError(f'unstructured {instr.name} at index {instr.index}')

        if op == Op.TYPE_NUMBER:
            stack.append(NumberExpr(instr.text if instr.text is not None else str(instr.operand)))
        elif op == Op.TYPE_STRING:
            stack.append(StringExpr(instr.text or ''))
        elif op == Op.TYPE_VAR:
            if not instr.text:
                raise ReconstructionError(f'unresolved variable name #{instr.operand}')
            stack.append(VarExpr(instr.text))
        elif op in KEYWORD_OPS:
            word, kind = KEYWORD_OPS[op]
            stack.append(KeywordExpr(word, kind))
        elif op == Op.TYPE_ARRAY:
            stack.append(_ArgsMarker())
        elif op == Op.ARRAY_END:
            stack.append(ArrayExpr(self._pop_args(stack)))
        elif op in PASSTHROUGH_OPS:
            stack.append(self._pop(stack))
        elif op == Op.COPY_LAST_OP:
            value = self._pop(stack)
            stack.extend([value, value])
        elif op == Op.SWAP_LAST_OPS:
            a, b = self._pop_n(stack, 2)
            stack.extend([b, a])
        elif op == Op.MEMBER_ACCESS:
            obj, member = self._pop_n(stack, 2)
            stack.append(MemberExpr(obj, member))
        elif op == Op.ARRAY:
            array, index = self._pop_n(stack, 2)
            stack.append(IndexExpr(array, index))
        elif op == Op.ARRAY_NEW:
            stack.append(NewArrayExpr([self._pop(stack)]))
        elif op == Op.ARRAY_NEW_MULTIDIM:
            stack.append(NewArrayExpr(self._pop_args(stack)))
        elif op in (Op.CALL, Op.CMD_CALL):
            func = self._pop(stack)
            stack.append(CallExpr(func, self._pop_args(stack)))
        elif op == Op.NEW_OBJECT:
            type_name = self._pop(stack)
            stack.append(NewExpr(type_name, self._pop_args(stack)))
        elif op == Op.FORMAT:
            stack.append(CallExpr(VarExpr('format'), self._pop_args(stack)))
        elif op in BINARY_OP_SYMBOLS:
            left, right = self._pop_n(stack, 2)
            stack.append(BinaryExpr(left, BINARY_OP_SYMBOLS[op], right))
        elif op in UNARY_OP_SYMBOLS:
            stack.append(UnaryExpr(UNARY_OP_SYMBOLS[op], self._pop(stack)))
        elif op == Op.IN_RANGE:
            value, low, high = self._pop_n(stack, 3)
            stack.append(InRangeExpr(value, low, high))
        elif op in BUILTIN_FUNCS:
            name, argc = BUILTIN_FUNCS[op]
            call = CallExpr(VarExpr(name), self._pop_n(stack, argc))
            if op == Op.SLEEP:
                self._flush_stack(stack, stmts)
                stmts.append(ExprStmt(call))
            else:
                stack.append(call)
        elif op in OBJECT_METHODS:
            name, argc = OBJECT_METHODS[op]
            args = self._pop_n(stack, argc)
            stack.append(MethodCallExpr(self._pop(stack), name, args))
        elif op == Op.MAKEVAR:
            value = self._pop(stack)
            name = _name_of(value)
            stack.append(VarExpr(name) if name is not None else CallExpr(VarExpr('makevar'), [value]))
        elif op == Op.ASSIGN:
            target, value = self._pop_n(stack, 2)
            if not target.assignable:
                raise ReconstructionError(f'assignment to non-assignable {target.to_source()}')
            self._flush_stack(stack, stmts)
            stmts.append(ExprStmt(AssignExpr(target, value)))
        elif op in (Op.INC, Op.DEC):
            target = self._pop(stack)
            if not target.assignable:
                raise ReconstructionError(f'{instr.name} of non-assignable {target.to_source()}')
            self._flush_stack(stack, stmts)
            stmts.append(ExprStmt(UnaryExpr('++' if op == Op.INC else '--', target, prefix=False)))
        elif op == Op.INDEX_DEC:
            value = self._pop(stack)
            self._flush_stack(stack, stmts)
            stmts.append(ExprStmt(value))
        elif op == Op.RET:
            value = self._pop(stack) if stack else None
            self._flush_stack(stack, stmts)
            stmts.append(ReturnStmt(value))
        else:
            raise ReconstructionError(f'no reconstruction for {instr.name} at index {instr.index}')

def disassemble_function(func: FunctionInfo) -> str:
    lines = [f'; Function {func.name} (opIndex {func.op_index}, {len(func.bytecode)} bytes, '
             f'{len(func.instructions)} instructions)']
    for instr in func.instructions:
        if instr.index in func.jump_targets:
            lines.append(f'L{instr.index}:')
        operand = ''
        if instr.text is not None:
            operand = f'"{instr.text}"'
        elif instr.operand is not None:
            operand = str(instr.operand)

        extra = ''
        target = instr.branch_target()
        if target is not None:
            extra = f'  ; -> {target}'
            if target < 0 or target >= len(func.instructions):
                extra += ' (out of range)'
        elif operand_kind(instr.op) is OperandKind.STRING and instr.text == '':
            extra = '  ; string index out of range'
        lines.append(f'{instr.index:4d}: {instr.addr:5d}  {instr.name:16s} {operand}{extra}'.rstrip())
    if func.decode_error:
        lines.append(f'; {func.decode_error}')
    return '\n'.join(lines)

def _make_decompiler(raw: bool = False) -> Decompiler:
    from gs2_cfg_decompiler import CFGDecompiler
    return CFGDecompiler(reconstruct=not raw)

def default_output_path(input_path, decompile_mode: bool) -> pathlib.Path:
    path = pathlib.Path(input_path)
    return path.with_name(path.stem + (SOURCE_EXT if decompile_mode else BYTECODE_EXT))

def decompile_file(input_path, output_path=None, verbose=False, raw=False,
                   encoding=DEFAULT_ENCODING, decompiler: Optional[Decompiler] = None) -> Optional[pathlib.Path]:
    if not os.path.exists(input_path):
        print(' -> [ERROR] File does not exist')
        return None

    if verbose:
        print(f'Decompiling file {input_path}')

    decompiler = decompiler or _make_decompiler(raw)
    start = time.perf_counter()
    if not decompiler.load_bytecode(input_path, encoding):
        print(f' -> [ERROR] {decompiler.error}')
        return None
    source = format_source(decompiler.decompile())
    if verbose:
        print(f'Decompiled in {time.perf_counter() - start:f} seconds')

    out = pathlib.Path(output_path) if output_path else default_output_path(input_path, True)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, 'w', encoding=encoding, errors='replace', newline='\n') as f:
            f.write(source)
    except OSError as e:
        print(f' -> [ERROR] Cannot write file: {out} ({e})')
        return None

    if verbose:
        print(f' -> saved to {out}')
    return out

def compile_file(input_path, output_path=None, verbose=False, encoding=DEFAULT_ENCODING,
                 compiler=None) -> Optional[pathlib.Path]:
    from gs2_compiler import get_default_compiler

    if not os.path.exists(input_path):
        print(' -> [ERROR] File does not exist')
        return None

    if verbose:
        print(f'Compiling file {input_path}')

    compiler = compiler or get_default_compiler()
    if compiler is None:
        print(' -> [ERROR] No GS2 compiler configured (set GS2_COMPILER)')
        return None

    try:
        with open(input_path, 'r', encoding=encoding, errors='replace') as f:
            script = f.read()
    except OSError:
        print(' -> [ERROR] Cannot open file.')
        return None

    start = time.perf_counter()
    response = compiler.compile(script)
    if verbose:
        print(f'Compiled in {time.perf_counter() - start:f} seconds')

    if response.errors:
        print(' -> [ERROR] ' + '\n'.join(str(err) for err in response.errors))
        return None

    out = pathlib.Path(output_path) if output_path else default_output_path(input_path, False)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, 'wb') as f:
            f.write(response.bytecode)
    except OSError as e:
        print(f' -> [ERROR] Cannot write file: {out} ({e})')
        return None

    if verbose:
        print(f' -> saved to {out}')
    return out

def print_info(input_path, encoding=DEFAULT_ENCODING) -> bool:
    decompiler = Decompiler()
    if not decompiler.load_bytecode(input_path, encoding):
        print(f'Error: {decompiler.error}', file=sys.stderr)
        return False
    loader = decompiler.loader
    print(f'GS2 Bytecode Information: {input_path}')
    print(f'  Segments: {len(loader.segments)}')
    for seg in loader.segments:
        print(f'    {seg.type.name:15s} offset {seg.offset:6d}, {seg.length} bytes')
    print(f'  Strings: {len(loader.string_table)}')
    print(f'  Functions: {len(loader.functions)}')
    for func in loader.functions:
        end = func.end_op_index if func.end_op_index is not None else 'end'
        status = f', {func.decode_error}' if func.decode_error else ''
        print(f'    {func.name}: [{func.op_index}, {end}), {len(func.bytecode)} bytes, '
              f'{len(func.instructions)} instructions{status}')
    return True

def print_disassembly(input_path, encoding=DEFAULT_ENCODING) -> bool:
    decompiler = Decompiler()
    if not decompiler.load_bytecode(input_path, encoding):
        print(f'Error: {decompiler.error}', file=sys.stderr)
        return False
    for func in decompiler.functions:
        print(disassemble_function(func))
        print()
    return True

def process_file_list(files, verbose=False, mode_name='', single_output=None, decompile_mode=False,
                      raw=False, encoding=DEFAULT_ENCODING) -> Tuple[int, int]:
    processed = 0
    errors = 0

    if mode_name:
        print(f'Processing {len(files)} files ({mode_name} mode):\n')

    decompiler = _make_decompiler(raw) if decompile_mode else None
    for file_path in files:
        file_path = pathlib.Path(file_path)
        if mode_name:
            print(f'Processing: {file_path.name}')

        output = single_output if len(files) == 1 and single_output else None
        if decompile_mode:
            written = decompile_file(file_path, output, verbose, encoding=encoding, decompiler=decompiler)
        else:
            written = compile_file(file_path, output, verbose, encoding=encoding)

        if len(files) == 1 and not verbose and written:
            print(f'{"Decompilation" if decompile_mode else "Compilation"} successful\n -> saved to {written}')

        if written:
            processed += 1
        else:
            errors += 1

    if mode_name:
        print(f'\n{mode_name} processing complete: {processed} files processed, {errors} errors')
    return processed, errors

def gather_files_from_directory(dir_path, verbose=False, decompile_mode=False) -> List[pathlib.Path]:
    wanted = (BYTECODE_EXT,) if decompile_mode else SOURCE_EXTS
    files = []
    for path in sorted(pathlib.Path(dir_path).iterdir()):
        if not path.is_file():
            continue
        if path.suffix in wanted:
            files.append(path)
        elif verbose:
            print(f'Skipping file {path}')
    return files

def process_directory(input_path, verbose=False, decompile_mode=False, raw=False,
                      encoding=DEFAULT_ENCODING) -> int:
    path = pathlib.Path(input_path)
    if not path.is_dir():
        print(f'Error: Invalid directory: {input_path}', file=sys.stderr)
        return 1

    if verbose:
        print(f'Scanning directory: {input_path}')

    files = gather_files_from_directory(path, verbose, decompile_mode)
    process_file_list(files, verbose, 'Directory', None, decompile_mode, raw, encoding)
    return 0

HELP_EPILOG = """\
Examples:
  %(prog)s script.gs2                    # Creates script.gs2bc (compile)
  %(prog)s script.gs2bc -d               # Creates script.gs2 (decompile)
  %(prog)s script.gs2 output.gs2bc       # Creates output.gs2bc
  %(prog)s script.gs2bc -o output.gs2 -d # Creates output.gs2 (decompile)
  %(prog)s scripts/                      # Process directory
  %(prog)s file1.gs2 file2.gs2 file3.gs2 # Process multiple files (drag & drop)
"""

class ArgumentParser(argparse.ArgumentParser):

    def error(self, message):
        print(f'Error: {message}', file=sys.stderr)
        print('Use --help for usage information.', file=sys.stderr)
        sys.exit(1)

def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        description='GS2 Script Compiler/Decompiler',
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('input', nargs='+', metavar='INPUT',
                        help='Input file (.gs2, .txt, or .gs2bc) or directory')
    parser.add_argument('-o', '--output', metavar='FILE', help='Specify output file')
    parser.add_argument('-d', '--decompile', action='store_true', help='Decompile .gs2bc to .gs2 source')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('-a', '--disasm', action='store_true', help='Print a disassembly listing of bytecode input')
    parser.add_argument('-i', '--info', action='store_true', help='Show segment, function and string table info')
    parser.add_argument('--raw', action='store_true', help='Emit disassembly comments instead of reconstructed code')
    parser.add_argument('-e', '--encoding', default=DEFAULT_ENCODING,
                        help=f'String table and source text encoding (default: {DEFAULT_ENCODING})')
    return parser

def parse_arguments(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    inputs = [pathlib.Path(p) for p in args.input]
    output = pathlib.Path(args.output) if args.output else None

    if len(inputs) == 2 and output is None and not (args.disasm or args.info):
        output = inputs.pop()

    args.directory_mode = False
    args.multi_file_mode = False
    if len(inputs) == 1:
        if inputs[0].is_dir():
            args.directory_mode = True
            if output is not None:
                parser.error('Output file cannot be specified for directory mode')
    else:
        args.multi_file_mode = True
        if output is not None:
            parser.error('Output file cannot be specified when processing multiple files')
        if any(p.is_dir() for p in inputs):
            parser.error('Cannot mix files and directories in multi-file mode')

    args.inputs = inputs
    args.output = output
    return args

def main(argv=None) -> int:
    args = parse_arguments(argv)

    if args.disasm or args.info:
        ok = True
        for path in args.inputs:
            if args.info:
                ok = print_info(path, args.encoding) and ok
            if args.disasm:
                ok = print_disassembly(path, args.encoding) and ok
        return 0 if ok else 1

    if args.directory_mode:
        return process_directory(args.inputs[0], args.verbose, args.decompile, args.raw, args.encoding)
    if args.multi_file_mode:
        process_file_list(args.inputs, args.verbose, 'Multi-file', None, args.decompile, args.raw, args.encoding)
        return 0
    process_file_list(args.inputs, args.verbose, '', args.output, args.decompile, args.raw, args.encoding)
    return 0

if __name__ == '__main__':
    sys.exit(main())
