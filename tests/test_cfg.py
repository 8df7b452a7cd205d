import pytest

from conftest import prologue, finish
from gs2_compiler import CodeBuilder
from gs2_decompiler import Op, ReconstructionError, decode_instructions
from gs2_cfg import (
    build_cfg, compute_dominators, dominates, loop_headers,
    VIRTUAL_ENTRY_ID, VIRTUAL_EXIT_ID,
)
from gs2_structuring import RegionType, build_region_tree


def _decode(b: CodeBuilder):
    instrs, _, err = decode_instructions(b.to_bytes(), ['i', 'x'])
    assert err is None
    return instrs


def _while_loop():
    b = CodeBuilder()
    head = b.count
    b.var(0)
    b.number(3)
    b.op(Op.LT)
    jloop = b.jump(Op.IF)
    b.var(0)
    b.op(Op.INC)
    jback = b.jump(Op.JMP)
    b.patch(jback, head)
    b.patch(jloop, b.count)
    return _decode(finish(b))


def test_empty_function_has_only_virtual_blocks():
    cfg = build_cfg([])
    assert set(cfg.blocks) == {VIRTUAL_ENTRY_ID, VIRTUAL_EXIT_ID}
    assert all(block_id < 0 for block_id in cfg.blocks)


def test_blocks_split_at_branches_and_targets():
    instrs = _while_loop()
    cfg = build_cfg(instrs)
    assert [(b.start_idx, b.end_idx, b.terminator) for b in sorted(cfg.blocks.values(), key=lambda b: b.start_idx) if b.id >= 0] == [
        (0, 4, 'cond'), (4, 7, 'jmp'), (7, 9, 'ret')]
    assert sorted(cfg.blocks[0].successors) == [4, 7]
    assert cfg.blocks[4].successors == [0]
    assert cfg.blocks[7].successors == [VIRTUAL_EXIT_ID]


def test_dominators_and_loop_header():
    cfg = build_cfg(_while_loop())
    compute_dominators(cfg)
    assert cfg.blocks[4].idom == 0
    assert dominates(cfg, 0, 7)
    assert not dominates(cfg, 4, 7)
    assert loop_headers(cfg) == {0}


def test_out_of_range_targets_are_recorded():
    b = CodeBuilder()
    b.jump(Op.IF, 10)
    b.op(Op.RET)
    instrs = _decode(b)
    cfg = build_cfg(instrs)
    assert cfg.out_of_range_targets == {10}


def test_region_tree_for_while_loop():
    tree = build_region_tree(_while_loop())
    assert tree.type == RegionType.SEQUENCE
    loop = tree.items[0]
    assert loop.type == RegionType.WHILE
    assert (loop.start, loop.end, loop.header) == (0, 7, 3)
    assert loop.cond_region.items == [0, 1, 2]
    assert loop.body_region.items == [4, 5]
    assert tree.items[1:] == [7, 8]
    assert [r.type for r in tree.walk()] == [
        RegionType.SEQUENCE, RegionType.WHILE, RegionType.SEQUENCE, RegionType.SEQUENCE]


def test_region_depth_follows_nesting():
    b = prologue(CodeBuilder())
    b.op(Op.TYPE_TRUE)
    outer = b.jump(Op.IF)
    b.op(Op.TYPE_FALSE)
    inner = b.jump(Op.IF)
    b.var(1)
    b.op(Op.INC)
    b.patch(inner, b.count)
    b.patch(outer, b.count)
    instrs = _decode(finish(b))
    tree = build_region_tree(instrs, start=2)
    outer_region = tree.items[1]
    inner_region = outer_region.then_region.items[1]
    assert outer_region.type == inner_region.type == RegionType.IF_THEN
    assert (outer_region.depth, inner_region.depth) == (0, 1)
    assert inner_region.then_region.items == [6, 7]


def test_stray_withend_is_rejected():
    b = CodeBuilder()
    b.jump(Op.WITHEND)
    with pytest.raises(ReconstructionError):
        build_region_tree(_decode(b))


def test_jump_outside_loop_is_rejected():
    b = CodeBuilder()
    b.op(Op.TYPE_TRUE)
    b.jump(Op.JMP, 2)
    b.op(Op.TYPE_NULL)
    b.op(Op.RET)
    with pytest.raises(ReconstructionError, match='unstructured JMP'):
        build_region_tree(_decode(b))
