import sys
from typing import List

from gs2_decompiler import (
    Decompiler, FunctionInfo, Stmt, ReconstructionError
)
from gs2_cfg import build_cfg, compute_dominators
from gs2_structuring import build_region_tree, generate_code

class CFGDecompiler(Decompiler):

    def _decompile_instructions(self, func: FunctionInfo, start: int) -> List[Stmt]:
        instructions = func.instructions
        if start >= len(instructions):
            return []

        old_limit = sys.getrecursionlimit()
        sys.setrecursionlimit(max(old_limit, 10000))
        try:
            cfg = build_cfg(instructions)
            if cfg.out_of_range_targets:
                raise ReconstructionError(
                    f'jump targets out of range: {sorted(cfg.out_of_range_targets)}')

            compute_dominators(cfg)

            region_tree = build_region_tree(instructions, start, cfg)

            stmts = generate_code(region_tree, instructions, self)

            return self._strip_implicit_return(stmts)
        except RecursionError:
            raise ReconstructionError(f'{func.name}: nesting too deep')
        finally:
            sys.setrecursionlimit(old_limit)
