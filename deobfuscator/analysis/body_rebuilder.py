from typing import List, Optional, Tuple

import structlog

from deobfuscator.core.basic_block import BasicBlock, BlockKind
from deobfuscator.core.block_graph import BlockGraph
from deobfuscator.core.instruction import Instruction
from deobfuscator.core.method import ExceptionHandler
from deobfuscator.core.opcodes import Opcode
from deobfuscator.exceptions import BlockGraphError

logger = structlog.get_logger()


def _retarget_terminal(block: BasicBlock) -> None:
    """Point the block's branch/switch operand at its target blocks."""
    kind = block.kind
    if kind not in (BlockKind.BRANCH, BlockKind.COND_BRANCH, BlockKind.SWITCH):
        return
    if not block.targets:
        raise BlockGraphError(f"{block.id} ends in a branch but has no target")
    for target in block.targets:
        if not target.instructions:
            raise BlockGraphError(f"Branch from {block.id} to an empty block")
    last = block.last_instruction
    if kind == BlockKind.SWITCH:
        last.operand = [target.first_instruction for target in block.targets]
    else:
        last.operand = block.targets[0].first_instruction


def get_code(graph: BlockGraph) -> Tuple[List[Instruction], List[ExceptionHandler]]:
    """
    Serialize a block graph into a flat instruction stream and handler table.

    Blocks are emitted in layout order. A ``br`` is appended to a block whose
    fall-through successor isn't emitted right after it.

    Returns:
        Tuple (instructions, exception_handlers)
    """
    blocks = graph.blocks
    for block in blocks:
        if not block.instructions:
            raise BlockGraphError(f"Can't emit empty block at position {graph.index(block)}")

    instructions: List[Instruction] = []
    added_branches = 0
    for pos, block in enumerate(blocks):
        next_block = blocks[pos + 1] if pos + 1 < len(blocks) else None
        _retarget_terminal(block)
        instructions.extend(block.instructions)
        if block.kind in (BlockKind.BRANCH, BlockKind.EXIT):
            continue
        if block.fall_through is not None and block.fall_through is not next_block:
            instructions.append(
                Instruction(Opcode.BR, block.fall_through.first_instruction)
            )
            added_branches += 1

    def first_after(block: BasicBlock) -> Optional[Instruction]:
        following = graph.next_block(block)
        return following.first_instruction if following is not None else None

    handlers = []
    for region in graph.regions:
        handlers.append(
            ExceptionHandler(
                handler_type=region.handler_type,
                try_start=region.try_first.first_instruction,
                try_end=first_after(region.try_last),
                handler_start=region.handler_first.first_instruction,
                handler_end=first_after(region.handler_last),
                filter_start=(
                    region.filter_first.first_instruction
                    if region.filter_first is not None
                    else None
                ),
                catch_type=region.catch_type,
            )
        )

    if added_branches:
        logger.debug("Inserted fall-through branches", count=added_branches)
    return instructions, handlers
