from typing import Dict, List, Sequence

import structlog

from deobfuscator.core.basic_block import BasicBlock
from deobfuscator.core.block_graph import BlockGraph, ExceptionHandlerRegion
from deobfuscator.core.instruction import Instruction
from deobfuscator.core.method import ExceptionHandler
from deobfuscator.core.opcodes import FlowControl
from deobfuscator.exceptions import InvalidMethodBodyError

logger = structlog.get_logger()


def build_method_graph(method) -> BlockGraph:
    """Build the block graph of a method's current body."""
    if method is None or not method.has_body or not method.body.has_instructions:
        raise InvalidMethodBodyError("Method has no instructions")
    return build_block_graph(
        method.body.instructions, method.body.exception_handlers, method=method
    )


def build_block_graph(
    instructions: Sequence[Instruction],
    exception_handlers: Sequence[ExceptionHandler] = (),
    method=None,
) -> BlockGraph:
    """
    Partition an instruction stream into basic blocks.

    A new basic block starts at:
    1. The first instruction.
    2. The instruction following a branch, switch, return or throw.
    3. Every branch and switch target.
    4. Every exception handler boundary.

    Args:
        instructions: The method's instructions in layout order
        exception_handlers: The method's exception handler table
        method: The method owning the instructions, kept on the graph

    Returns:
        A BlockGraph with successor/predecessor edges and handler regions

    Raises:
        InvalidMethodBodyError: If the stream is empty or references an
            instruction it doesn't contain
    """
    instructions = list(instructions)
    if not instructions:
        raise InvalidMethodBodyError("Empty instruction stream")

    index_of: Dict[int, int] = {}
    for i, instr in enumerate(instructions):
        if id(instr) in index_of:
            raise InvalidMethodBodyError(f"Instruction appears twice: {instr!r}")
        index_of[id(instr)] = i

    def position(instr: Instruction, what: str) -> int:
        if instr is None or id(instr) not in index_of:
            raise InvalidMethodBodyError(f"{what} is not in the method body: {instr!r}")
        return index_of[id(instr)]

    # 1. Identify block leaders
    leaders = {0}
    for i, instr in enumerate(instructions):
        if instr.ends_block() and i + 1 < len(instructions):
            leaders.add(i + 1)
        for target in instr.branch_targets():
            leaders.add(position(target, f"Branch target of {instr!r}"))
    for handler in exception_handlers:
        for boundary in handler.boundaries():
            leaders.add(position(boundary, "Exception handler boundary"))

    # 2. Create blocks
    starts = sorted(leaders)
    blocks: List[BasicBlock] = []
    block_at: Dict[int, BasicBlock] = {}
    for start, end in zip(starts, starts[1:] + [len(instructions)]):
        block = BasicBlock(instructions[start:end])
        blocks.append(block)
        block_at[start] = block

    # 3. Record edges from each block's terminal instruction
    for pos, block in enumerate(blocks):
        last = block.last_instruction
        next_block = blocks[pos + 1] if pos + 1 < len(blocks) else None
        targets = [block_at[index_of[id(t)]] for t in last.branch_targets()]
        flow = last.flow_control
        if flow == FlowControl.BRANCH:
            block.set_edges(None, targets)
        elif flow in (FlowControl.COND_BRANCH, FlowControl.SWITCH):
            block.set_edges(next_block, targets)
        elif flow in (FlowControl.RETURN, FlowControl.THROW):
            block.set_edges(None, [])
        else:
            block.set_edges(next_block, [])

    # 4. Map handler boundaries to block ranges
    block_pos = {id(block): pos for pos, block in enumerate(blocks)}

    def last_before(end_instr) -> BasicBlock:
        if end_instr is None:
            return blocks[-1]
        end_block = block_at[position(end_instr, "Region end")]
        end_pos = block_pos[id(end_block)]
        if end_pos == 0:
            raise InvalidMethodBodyError("Exception handler region ends before it starts")
        return blocks[end_pos - 1]

    regions = []
    for handler in exception_handlers:
        try_first = block_at[position(handler.try_start, "Try start")]
        handler_first = block_at[position(handler.handler_start, "Handler start")]
        try_last = last_before(handler.try_end)
        handler_last = last_before(handler.handler_end)
        if (
            block_pos[id(try_last)] < block_pos[id(try_first)]
            or block_pos[id(handler_last)] < block_pos[id(handler_first)]
        ):
            raise InvalidMethodBodyError("Exception handler region ends before it starts")
        filter_first = None
        if handler.filter_start is not None:
            filter_first = block_at[position(handler.filter_start, "Filter start")]
        regions.append(
            ExceptionHandlerRegion(
                handler_type=handler.handler_type,
                try_first=try_first,
                try_last=try_last,
                handler_first=handler_first,
                handler_last=handler_last,
                filter_first=filter_first,
                catch_type=handler.catch_type,
            )
        )

    logger.debug(
        "Built block graph",
        instructions=len(instructions),
        blocks=len(blocks),
        regions=len(regions),
    )
    return BlockGraph(method=method, blocks=blocks, regions=regions)
