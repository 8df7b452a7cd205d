from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Set, Union

from gs2_decompiler import (
    Op, Instruction, ReconstructionError, Expr, Stmt, BinaryExpr,
    IfStmt, WhileStmt, ForEachStmt, WithStmt, BreakStmt, ContinueStmt,
)
from gs2_cfg import CFG, build_cfg, compute_dominators, loop_headers

class RegionType(Enum):
    SEQUENCE = auto()
    IF_THEN = auto()
    IF_ELSE = auto()
    WHILE = auto()
    FOREACH = auto()
    WITH = auto()
    AND = auto()
    OR = auto()
    BREAK = auto()
    CONTINUE = auto()

@dataclass
class Region:
    type: RegionType
    start: int
    end: int
    depth: int = 0
    header: Optional[int] = None
    items: List[Union[int, 'Region']] = field(default_factory=list)

    cond_region: Optional['Region'] = None
    then_region: Optional['Region'] = None
    else_region: Optional['Region'] = None
    body_region: Optional['Region'] = None

    def children(self) -> List['Region']:
        if self.type == RegionType.SEQUENCE:
            return [item for item in self.items if isinstance(item, Region)]
        return [r for r in (self.cond_region, self.then_region, self.else_region, self.body_region)
                if r is not None]

    def walk(self):
        yield self
        for child in self.children():
            yield from child.walk()

@dataclass
class _LoopContext:
    head: int
    exit: int

def _item_start(item: Union[int, Region]) -> int:
    return item if isinstance(item, int) else item.start

def _target(instr: Instruction) -> int:
    target = instr.branch_target()
    if target is None:
        raise ReconstructionError(f'{instr.name} at index {instr.index} has no jump offset')
    return target

def build_region_tree(instructions: List[Instruction], start: int = 0,
                      cfg: Optional[CFG] = None) -> Region:
    """Build the region tree for instructions[start:].

    Every jump-carrying instruction must be explained by a region, otherwise
    ReconstructionError is raised.
    """
    if cfg is None:
        cfg = build_cfg(instructions)
        compute_dominators(cfg)
    headers = loop_headers(cfg)
    return _build_sequence(instructions, start, len(instructions), 0, None, headers)

def _build_sequence(instructions: List[Instruction], lo: int, hi: int, depth: int,
                    loop: Optional[_LoopContext], headers: Set[int]) -> Region:
    items: List[Union[int, Region]] = []
    i = lo
    while i < hi:
        instr = instructions[i]
        op = instr.op

        if op == Op.IF:
            region = _build_if(instructions, i, lo, hi, depth, loop, headers, items)
            items.append(region)
            i = region.end

        elif op in (Op.AND, Op.OR):
            t = _target(instr)
            if not i < t <= hi:
                raise ReconstructionError(f'{instr.name} at {i} jumps outside its block')
            right = _build_sequence(instructions, i + 1, t, depth + 1, loop, headers)
            items.append(Region(RegionType.AND if op == Op.AND else RegionType.OR,
                                start=i, end=t, depth=depth, header=i, body_region=right))
            i = t

        elif op == Op.WITH:
            t = _target(instr)
            if not i + 1 < t <= hi or instructions[t - 1].op != Op.WITHEND:
                raise ReconstructionError(f'WITH at {i} has no matching WITHEND')
            body = _build_sequence(instructions, i + 1, t - 1, depth + 1, loop, headers)
            items.append(Region(RegionType.WITH, start=i, end=t, depth=depth, header=i, body_region=body))
            i = t

        elif op == Op.FOREACH:
            t = _target(instr)
            if not i + 1 < t <= hi:
                raise ReconstructionError(f'FOREACH at {i} jumps outside its block')
            back = instructions[t - 1]
            if back.op != Op.JMP or _target(back) != i or i not in headers:
                raise ReconstructionError(f'FOREACH at {i} has no loop back edge')
            body = _build_sequence(instructions, i + 1, t - 1, depth + 1, _LoopContext(i, t), headers)
            items.append(Region(RegionType.FOREACH, start=i, end=t, depth=depth, header=i, body_region=body))
            i = t

        elif op == Op.JMP:
            t = _target(instr)
            if loop is not None and t == loop.exit:
                items.append(Region(RegionType.BREAK, start=i, end=i + 1, depth=depth, header=i))
            elif loop is not None and t == loop.head:
                items.append(Region(RegionType.CONTINUE, start=i, end=i + 1, depth=depth, header=i))
            else:
                raise ReconstructionError(f'unstructured JMP at {i} to {t}')
            i += 1

        elif op in (Op.WITHEND, Op.SET_INDEX, Op.SET_INDEX_TRUE):
            raise ReconstructionError(f'unexpected {instr.name} at {i}')

        else:
            items.append(i)
            i += 1

    return Region(RegionType.SEQUENCE, start=lo, end=hi, depth=depth, items=items)

def _build_if(instructions: List[Instruction], i: int, lo: int, hi: int, depth: int,
              loop: Optional[_LoopContext], headers: Set[int],
              items: List[Union[int, Region]]) -> Region:
    t = _target(instructions[i])
    if not i < t <= hi:
        raise ReconstructionError(f'IF at {i} jumps outside its block')

    last = instructions[t - 1] if t - 1 > i else None
    if last is not None and last.op == Op.JMP:
        lt = _target(last)

        if lo <= lt < i and lt in headers:
            k = next((n for n, item in enumerate(items) if _item_start(item) == lt), None)
            if k is None:
                raise ReconstructionError(f'loop condition at {lt} is not a statement boundary')
            cond_items = items[k:]
            if any(isinstance(item, Region) and item.type not in (RegionType.AND, RegionType.OR)
                   for item in cond_items):
                raise ReconstructionError(f'loop condition at {lt} contains statements')
            del items[k:]
            cond = Region(RegionType.SEQUENCE, start=lt, end=i, depth=depth + 1, items=cond_items)
            body = _build_sequence(instructions, i + 1, t - 1, depth + 1, _LoopContext(lt, t), headers)
            return Region(RegionType.WHILE, start=lt, end=t, depth=depth, header=i,
                          cond_region=cond, body_region=body)

        if loop is not None and lt in (loop.exit, loop.head):
            then = _build_sequence(instructions, i + 1, t, depth + 1, loop, headers)
            return Region(RegionType.IF_THEN, start=i, end=t, depth=depth, header=i, then_region=then)

        if t < lt <= hi:
            then = _build_sequence(instructions, i + 1, t - 1, depth + 1, loop, headers)
            other = _build_sequence(instructions, t, lt, depth + 1, loop, headers)
            return Region(RegionType.IF_ELSE, start=i, end=lt, depth=depth, header=i,
                          then_region=then, else_region=other)

        raise ReconstructionError(f'unstructured JMP at {last.index} to {lt}')

    then = _build_sequence(instructions, i + 1, t, depth + 1, loop, headers)
    return Region(RegionType.IF_THEN, start=i, end=t, depth=depth, header=i, then_region=then)

def generate_code(region: Region, instructions: List[Instruction], decompiler) -> List[Stmt]:
    return _generate_block(region, instructions, decompiler)

def _generate_block(region: Region, instructions: List[Instruction], decompiler) -> List[Stmt]:
    stack = []
    stmts: List[Stmt] = []
    _generate_sequence(region, instructions, decompiler, stack, stmts)
    decompiler._flush_stack(stack, stmts)
    return stmts

def _evaluate(region: Region, instructions: List[Instruction], decompiler) -> Expr:
    stack = []
    stmts: List[Stmt] = []
    _generate_sequence(region, instructions, decompiler, stack, stmts)
    if stmts or len(stack) != 1 or not isinstance(stack[0], Expr):
        raise ReconstructionError(f'region at {region.start} does not produce a single value')
    return stack[0]

def _generate_sequence(region: Region, instructions: List[Instruction], decompiler,
                       stack: list, stmts: List[Stmt]):
    for item in region.items:
        if isinstance(item, int):
            decompiler._translate_instruction(instructions[item], stack, stmts)
            continue

        rtype = item.type
        if rtype in (RegionType.AND, RegionType.OR):
            left = decompiler._pop(stack)
            right = _evaluate(item.body_region, instructions, decompiler)
            stack.append(BinaryExpr(left, '&&' if rtype == RegionType.AND else '||', right))

        elif rtype in (RegionType.IF_THEN, RegionType.IF_ELSE):
            cond = decompiler._pop(stack)
            decompiler._flush_stack(stack, stmts)
            then_body = _generate_block(item.then_region, instructions, decompiler)
            else_body = []
            if item.else_region is not None:
                else_body = _generate_block(item.else_region, instructions, decompiler)
            stmts.append(IfStmt(cond, then_body, else_body))

        elif rtype == RegionType.WHILE:
            decompiler._flush_stack(stack, stmts)
            cond = _evaluate(item.cond_region, instructions, decompiler)
            body = _generate_block(item.body_region, instructions, decompiler)
            stmts.append(WhileStmt(cond, body))

        elif rtype == RegionType.FOREACH:
            var, collection = decompiler._pop_n(stack, 2)
            decompiler._flush_stack(stack, stmts)
            body = _generate_block(item.body_region, instructions, decompiler)
            stmts.append(ForEachStmt(var, collection, body))

        elif rtype == RegionType.WITH:
            obj = decompiler._pop(stack)
            decompiler._flush_stack(stack, stmts)
            body = _generate_block(item.body_region, instructions, decompiler)
            stmts.append(WithStmt(obj, body))

        elif rtype == RegionType.BREAK:
            decompiler._flush_stack(stack, stmts)
            stmts.append(BreakStmt())

        elif rtype == RegionType.CONTINUE:
            decompiler._flush_stack(stack, stmts)
            stmts.append(ContinueStmt())

        else:
            raise ReconstructionError(f'unexpected {rtype.name} region at {item.start}')
