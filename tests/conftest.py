"""Test configuration ensuring the root-level modules are importable."""

import struct
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent

TESTS = ROOT / "tests"

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)
if str(TESTS) not in sys.path:
    sys.path.insert(1, str(TESTS))

from gs2_compiler import BytecodeWriter, CodeBuilder
from gs2_decompiler import Op


def seg(seg_type: int, payload: bytes) -> bytes:
    return struct.pack('>II', seg_type, len(payload)) + payload


def prologue(b: CodeBuilder, *params: str) -> CodeBuilder:
    b.op(Op.TYPE_ARRAY)
    for name in params:
        b.var(name)
    b.op(Op.FUNC_PARAMS_END)
    return b


def finish(b: CodeBuilder) -> CodeBuilder:
    b.number(0)
    b.op(Op.RET)
    return b


@pytest.fixture
def writer() -> BytecodeWriter:
    return BytecodeWriter()
