"""
Constant folding over a symbolic int32 evaluation stack.

Each block is simulated on its own with z3 bit-vectors. Values entering the
block from a predecessor, call results and anything not modelled are fresh
symbols.

Every simulated value remembers which instructions of the block computed it,
whether computing it had side effects and whether it is derived only from
int32 literals. Arguments, locals and call results may hold floats, where
``x == x`` is false for NaN, so a branch or switch is only decided on typed
values. Pure values computed by the run of instructions right before their
consumer can be deleted together with it. Deleted instructions are turned
into ``nop`` in place and left for the pipeline's nop removal.
"""

import itertools
from typing import Dict, List, Optional, Tuple

import structlog
import z3

from deobfuscator.core.basic_block import BasicBlock
from deobfuscator.core.block_graph import BlockGraph
from deobfuscator.core.instruction import Instruction
from deobfuscator.core.opcodes import LDLOC_MACROS, STLOC_MACROS, Opcode
from deobfuscator.transforms.base import TransformPass
from deobfuscator.utils.il_ops import (
    BINARY_OPS,
    BRANCH_CONDITIONS,
    UNARY_OPS,
    WORD_SIZE,
    as_bool,
    as_int32,
    bv,
)

logger = structlog.get_logger()


class StackValue:
    """One slot of the simulated evaluation stack."""

    def __init__(self, expr, sources=(), pure: bool = False, typed: bool = False):
        self.expr = expr
        # Indexes of the block instructions that computed this value
        self.sources: List[int] = list(sources)
        self.pure = pure
        # Derived only from int32 literals
        self.typed = typed

    @property
    def literal(self) -> Optional[int]:
        return as_int32(self.expr)

    def __repr__(self) -> str:
        return (
            f"StackValue({self.expr}, sources={self.sources}, "
            f"pure={self.pure}, typed={self.typed})"
        )


def _is_contiguous(block: BasicBlock, sources: List[int], end: int) -> bool:
    """True if ``sources`` are exactly the non-nop instructions right before ``end``."""
    if not sources or max(sources) >= end:
        return False
    wanted = set(sources)
    if len(wanted) != len(sources):
        return False
    for j in range(min(wanted), end):
        if j not in wanted and block.instructions[j].opcode != Opcode.NOP:
            return False
    return True


def _make_nop(instr: Instruction) -> None:
    instr.opcode, instr.operand = Opcode.NOP, None


def _local_index(instr: Instruction, macros, short_opcode) -> Optional[int]:
    if instr.opcode in macros:
        return macros[instr.opcode]
    if instr.opcode == short_opcode:
        return int(instr.operand)
    return None


class ConstantFolder(TransformPass):
    """
    Folds literal arithmetic, statically decided branches and discarded pure values.

    Args:
        disable_extra_instructions: Never insert instructions. A branch is
            then only folded when its operands can be deleted along with it.
    """

    name = "constant_folder"

    def __init__(self, disable_extra_instructions: bool = False):
        self.disable_extra_instructions = disable_extra_instructions
        self._symbols = itertools.count()

    def initialize(self, graph: BlockGraph) -> None:
        self._symbols = itertools.count()

    def apply(self, graph: BlockGraph) -> bool:
        changed = False
        for block in graph.blocks:
            while self._fold_block(graph, block):
                changed = True
        return changed

    def _fresh(self) -> z3.BitVecRef:
        return z3.BitVec(f"sym_{next(self._symbols)}", WORD_SIZE)

    def _fold_block(self, graph: BlockGraph, block: BasicBlock) -> bool:
        """Simulate the block and apply the first possible rewrite."""
        stack: List[StackValue] = []
        # Slot index -> (expr, typed)
        args: Dict[int, Tuple[z3.BitVecRef, bool]] = {}
        local_vars: Dict[int, Tuple[z3.BitVecRef, bool]] = {}

        def pop() -> StackValue:
            if stack:
                return stack.pop()
            # Value pushed by a predecessor block
            return StackValue(self._fresh())

        def push(expr, sources=(), pure=False, typed=False) -> None:
            stack.append(StackValue(expr, sources, pure, typed))

        def load(slots, index: int, prefix: str, i: int) -> None:
            expr, typed = slots.setdefault(
                index, (z3.BitVec(f"{prefix}_{index}", WORD_SIZE), False)
            )
            push(expr, [i], True, typed)

        for i, instr in enumerate(block.instructions):
            opcode = instr.opcode
            if opcode == Opcode.NOP:
                continue

            if instr.is_ldc_i4():
                push(bv(instr.get_ldc_i4_value()), [i], True, True)
            elif opcode == Opcode.LDNULL:
                push(bv(0), [i], True, True)
            elif opcode in (Opcode.LDC_I8, Opcode.LDSTR):
                push(self._fresh(), [i], True)
            elif instr.get_ldarg_index() is not None:
                load(args, instr.get_ldarg_index(), "arg", i)
            elif _local_index(instr, LDLOC_MACROS, Opcode.LDLOC_S) is not None:
                load(local_vars, _local_index(instr, LDLOC_MACROS, Opcode.LDLOC_S), "loc", i)
            elif _local_index(instr, STLOC_MACROS, Opcode.STLOC_S) is not None:
                value = pop()
                local_vars[_local_index(instr, STLOC_MACROS, Opcode.STLOC_S)] = (
                    value.expr,
                    value.typed,
                )
            elif opcode == Opcode.STARG_S:
                value = pop()
                args[int(instr.operand)] = (value.expr, value.typed)
            elif opcode == Opcode.DUP:
                value = pop()
                push(value.expr, typed=value.typed)
                push(value.expr, typed=value.typed)
            elif opcode in BINARY_OPS:
                right, left = pop(), pop()
                if self._fold_literals(block, i, [left, right]):
                    return True
                result = BINARY_OPS[opcode](left.expr, right.expr)
                push(
                    result if result is not None else self._fresh(),
                    left.sources + right.sources + [i],
                    left.pure and right.pure and result is not None,
                    left.typed and right.typed and result is not None,
                )
            elif opcode in UNARY_OPS:
                operand = pop()
                if self._fold_literals(block, i, [operand]):
                    return True
                push(
                    UNARY_OPS[opcode](operand.expr),
                    operand.sources + [i],
                    operand.pure,
                    operand.typed,
                )
            elif opcode == Opcode.POP:
                value = pop()
                if value.pure and _is_contiguous(block, value.sources, i):
                    for j in value.sources:
                        _make_nop(block.instructions[j])
                    _make_nop(instr)
                    logger.debug("Removed discarded value", block=block.id, count=len(value.sources))
                    return True
            elif opcode == Opcode.SWITCH:
                return self._fold_switch(block, i, pop())
            elif instr.is_conditional_branch():
                condition = BRANCH_CONDITIONS.get(opcode)
                if condition is None:
                    return False
                pops, _ = instr.stack_effect()
                values = [pop() for _ in range(pops)][::-1]
                if not all(value.typed for value in values):
                    return False
                outcome = as_bool(condition(*[value.expr for value in values]))
                if outcome is None:
                    return False
                taken = block.targets[0] if outcome else None
                return self._fold_branch(block, i, values, taken)
            else:
                effect = instr.stack_effect(graph.method)
                if effect is None:
                    return False
                pops, pushes = effect
                for _ in range(pops):
                    pop()
                for _ in range(pushes):
                    push(self._fresh())
        return False

    def _fold_literals(self, block: BasicBlock, i: int, operands: List[StackValue]) -> bool:
        """Replace ``ldc ..; <op>`` at index ``i`` with a single ldc."""
        sources = []
        for operand in operands:
            if len(operand.sources) != 1:
                return False
            if not block.instructions[operand.sources[0]].is_ldc_i4():
                return False
            sources.extend(operand.sources)
        if not _is_contiguous(block, sources, i):
            return False

        instr = block.instructions[i]
        exprs = [operand.expr for operand in operands]
        if len(exprs) == 2:
            result = BINARY_OPS[instr.opcode](*exprs)
        else:
            result = UNARY_OPS[instr.opcode](*exprs)
        value = as_int32(result) if result is not None else None
        if value is None:
            return False

        folded = Instruction.create_ldc_i4(value)
        logger.debug(
            "Folded constant expression",
            block=block.id,
            operation=instr.opcode.mnemonic,
            value=value,
        )
        for j in sources:
            _make_nop(block.instructions[j])
        instr.opcode, instr.operand = folded.opcode, folded.operand
        return True

    def _fold_switch(self, block: BasicBlock, i: int, selector: StackValue) -> bool:
        index = selector.literal if selector.typed else None
        if index is None:
            return False
        if 0 <= index < len(block.targets):
            taken = block.targets[index]
        else:
            taken = None
        return self._fold_branch(block, i, [selector], taken)

    def _fold_branch(
        self,
        block: BasicBlock,
        i: int,
        operands: List[StackValue],
        taken: Optional[BasicBlock],
    ) -> bool:
        """
        Turn the decided branch at index ``i`` into a ``br`` or a fall-through.

        Args:
            taken: The block the branch always goes to, or None if it never
                branches
        """
        if taken is None and block.fall_through is None:
            return False
        instr = block.instructions[i]
        sources = [j for operand in operands for j in operand.sources]

        if all(operand.pure for operand in operands) and _is_contiguous(block, sources, i):
            for j in sources:
                _make_nop(block.instructions[j])
            if taken is not None:
                instr.opcode, instr.operand = Opcode.BR, taken.first_instruction
            else:
                _make_nop(instr)
        elif self.disable_extra_instructions:
            return False
        else:
            instr.opcode, instr.operand = Opcode.POP, None
            extra = [Instruction(Opcode.POP) for _ in operands[1:]]
            if taken is not None:
                extra.append(Instruction(Opcode.BR, taken.first_instruction))
            block.instructions[i + 1 : i + 1] = extra

        if taken is not None:
            block.set_edges(None, [taken])
        else:
            block.set_edges(block.fall_through, [])
        logger.debug("Folded branch", block=block.id, taken=taken is not None)
        return True
