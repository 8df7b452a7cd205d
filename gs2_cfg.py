#!/usr/bin/env python3

from dataclasses import dataclass, field
from typing import List, Dict, Optional, Set, Tuple
from gs2_decompiler import Op, Instruction


@dataclass
class BasicBlock:
    id: int
    start_idx: int
    end_idx: int
    successors: List[int] = field(default_factory=list)
    predecessors: List[int] = field(default_factory=list)
    terminator: Optional[str] = None

    idom: Optional[int] = None


VIRTUAL_ENTRY_ID = -1
VIRTUAL_EXIT_ID = -2

# SET_INDEX forms keep their fall-through edge; only JMP is unconditional.
CONDITIONAL_OPS = frozenset({Op.IF, Op.AND, Op.OR, Op.SET_INDEX, Op.SET_INDEX_TRUE, Op.FOREACH})


@dataclass
class CFG:
    blocks: Dict[int, BasicBlock] = field(default_factory=dict)
    entry_id: int = VIRTUAL_ENTRY_ID
    exit_id: int = VIRTUAL_EXIT_ID
    out_of_range_targets: Set[int] = field(default_factory=set)


def build_cfg(instructions: List[Instruction]) -> CFG:
    cfg = CFG()
    if not instructions:
        _add_virtual_nodes(cfg)
        return cfg

    n = len(instructions)

    leaders = {0}
    for i, instr in enumerate(instructions):
        if instr.op == Op.JMP or instr.op in CONDITIONAL_OPS:
            target = instr.branch_target()
            if target is not None:
                if 0 <= target < n:
                    leaders.add(target)
                else:
                    cfg.out_of_range_targets.add(target)
            if i + 1 < n:
                leaders.add(i + 1)
        elif instr.op == Op.RET:
            if i + 1 < n:
                leaders.add(i + 1)

    sorted_leaders = sorted(leaders)

    for li, leader_idx in enumerate(sorted_leaders):
        end_idx = sorted_leaders[li + 1] if li + 1 < len(sorted_leaders) else n

        block = BasicBlock(id=leader_idx, start_idx=leader_idx, end_idx=end_idx)
        last_instr = instructions[end_idx - 1]
        if last_instr.op == Op.JMP:
            block.terminator = 'jmp'
        elif last_instr.op in CONDITIONAL_OPS:
            block.terminator = 'cond'
        elif last_instr.op == Op.RET:
            block.terminator = 'ret'
        else:
            block.terminator = 'fall'
        cfg.blocks[block.id] = block

    for block in list(cfg.blocks.values()):
        last_instr = instructions[block.end_idx - 1]
        target = last_instr.branch_target()

        if block.terminator in ('jmp', 'cond') and target is not None and target in cfg.blocks:
            _add_edge(cfg, block.id, target)
        if block.terminator in ('cond', 'fall') and block.end_idx < n:
            _add_edge(cfg, block.id, block.end_idx)

    _add_virtual_nodes(cfg)

    return cfg


def _add_edge(cfg: CFG, from_id: int, to_id: int):
    from_block = cfg.blocks.get(from_id)
    to_block = cfg.blocks.get(to_id)
    if from_block is None or to_block is None:
        return
    if to_id not in from_block.successors:
        from_block.successors.append(to_id)
    if from_id not in to_block.predecessors:
        to_block.predecessors.append(from_id)


def _add_virtual_nodes(cfg: CFG):
    entry_block = BasicBlock(id=VIRTUAL_ENTRY_ID, start_idx=-1, end_idx=-1)
    cfg.blocks[VIRTUAL_ENTRY_ID] = entry_block
    cfg.entry_id = VIRTUAL_ENTRY_ID

    if 0 in cfg.blocks:
        _add_edge(cfg, VIRTUAL_ENTRY_ID, 0)

    exit_block = BasicBlock(id=VIRTUAL_EXIT_ID, start_idx=-1, end_idx=-1)
    cfg.blocks[VIRTUAL_EXIT_ID] = exit_block
    cfg.exit_id = VIRTUAL_EXIT_ID

    for block in cfg.blocks.values():
        if block.id >= 0 and (block.terminator == 'ret' or not block.successors):
            _add_edge(cfg, block.id, VIRTUAL_EXIT_ID)


def _compute_rpo(cfg: CFG, entry_id: int) -> List[int]:
    visited = set()
    post_order = []
    stack = [(entry_id, iter(cfg.blocks[entry_id].successors))]
    visited.add(entry_id)
    while stack:
        block_id, succs = stack[-1]
        for succ_id in succs:
            if succ_id not in visited and succ_id in cfg.blocks:
                visited.add(succ_id)
                stack.append((succ_id, iter(cfg.blocks[succ_id].successors)))
                break
        else:
            post_order.append(block_id)
            stack.pop()
    return list(reversed(post_order))


def _intersect(idom: Dict[int, int], rpo_number: Dict[int, int], b1: int, b2: int) -> int:
    finger1 = b1
    finger2 = b2
    while finger1 != finger2:
        while rpo_number.get(finger1, float('inf')) > rpo_number.get(finger2, float('inf')):
            finger1 = idom.get(finger1, finger1)
            if finger1 == idom.get(finger1):
                break
        while rpo_number.get(finger2, float('inf')) > rpo_number.get(finger1, float('inf')):
            finger2 = idom.get(finger2, finger2)
            if finger2 == idom.get(finger2):
                break
    return finger1


def compute_dominators(cfg: CFG):
    entry_id = cfg.entry_id

    rpo = _compute_rpo(cfg, entry_id)
    rpo_number = {block_id: i for i, block_id in enumerate(rpo)}

    idom = {entry_id: entry_id}

    changed = True
    while changed:
        changed = False
        for b in rpo:
            if b == entry_id:
                continue

            block = cfg.blocks.get(b)
            if block is None:
                continue

            new_idom = None
            for p in block.predecessors:
                if p in idom:
                    new_idom = p
                    break

            if new_idom is None:
                continue

            for p in block.predecessors:
                if p == new_idom:
                    continue
                if p in idom:
                    new_idom = _intersect(idom, rpo_number, new_idom, p)

            if idom.get(b) != new_idom:
                idom[b] = new_idom
                changed = True

    for block_id, dom_id in idom.items():
        block = cfg.blocks.get(block_id)
        if block:
            block.idom = dom_id


def dominates(cfg: CFG, a: int, b: int) -> bool:
    if a == b:
        return True
    current = b
    visited = set()
    while current is not None and current not in visited:
        visited.add(current)
        block = cfg.blocks.get(current)
        if block is None:
            return False
        if block.idom == a:
            return True
        if block.idom == current:
            return False
        current = block.idom
    return False


def get_back_edges(cfg: CFG) -> List[Tuple[int, int]]:
    back_edges = []
    for block in cfg.blocks.values():
        if block.id < 0:
            continue
        for succ_id in block.successors:
            if dominates(cfg, succ_id, block.id):
                back_edges.append((block.id, succ_id))
    return back_edges


def loop_headers(cfg: CFG) -> Set[int]:
    """Instruction indices that start a loop (targets of a back edge)."""
    return {header for _, header in get_back_edges(cfg)}
