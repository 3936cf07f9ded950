from typing import List, Optional, Sequence

import structlog

from deobfuscator.analysis.dead_blocks import remove_dead_blocks
from deobfuscator.core.basic_block import BasicBlock, BlockKind
from deobfuscator.core.block_graph import BlockGraph
from deobfuscator.core.opcodes import Opcode
from deobfuscator.transforms.base import TransformPass
from deobfuscator.transforms.call_inliner import CallInliner
from deobfuscator.transforms.constant_folder import ConstantFolder

logger = structlog.get_logger()

DEFAULT_MAX_ITERATIONS = 20


def remove_nops(graph: BlockGraph) -> bool:
    changed = False
    for block in graph.blocks:
        if block.remove_nops():
            changed = True
    return changed


def _can_merge(graph: BlockGraph, first: BasicBlock, second: BasicBlock) -> bool:
    if first.kind == BlockKind.BRANCH:
        # leave also empties the evaluation stack
        if first.last_instruction.opcode not in (Opcode.BR, Opcode.BR_S):
            return False
    elif first.kind != BlockKind.FALLTHROUGH:
        return False
    return (
        first.successors() == [second]
        and second.sources == [first]
        and not graph.is_region_boundary(first, second)
    )


def merge_blocks(graph: BlockGraph) -> bool:
    """Merge each block that is only reached from the block laid out before it."""
    merged = False
    i = 0
    while i + 1 < len(graph.blocks):
        first, second = graph.blocks[i], graph.blocks[i + 1]
        if _can_merge(graph, first, second):
            graph.merge(first, second)
            merged = True
        else:
            i += 1
    return merged


class TransformPipeline:
    """
    Runs transform passes over a block graph until nothing changes.

    The built-in CallInliner (unless ``inline_calls`` is off) and
    ConstantFolder are appended after the passes given by the caller. Every
    iteration also removes nops and unreachable blocks and merges simple
    block chains. The number of iterations is capped.
    """

    def __init__(
        self,
        passes: Optional[Sequence[TransformPass]] = None,
        disable_extra_instructions: bool = False,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        inline_instance_methods: bool = False,
        inline_calls: bool = True,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.passes: List[TransformPass] = list(passes or [])
        if inline_calls:
            self.passes.append(CallInliner(inline_instance_methods=inline_instance_methods))
        self.passes.append(ConstantFolder(disable_extra_instructions))
        self.max_iterations = max_iterations

    def run(self, graph: BlockGraph) -> bool:
        """
        Transform the graph in place.

        Returns:
            True if any iteration changed the graph
        """
        for transform in self.passes:
            transform.initialize(graph)

        modified = False
        for iteration in range(self.max_iterations):
            changed = False
            for transform in self.passes:
                if transform.apply(graph):
                    logger.debug(
                        "Pass changed graph", transform=transform.name, iteration=iteration
                    )
                    graph.repartition()
                    changed = True
            if remove_nops(graph):
                changed = True
            if remove_dead_blocks(graph):
                changed = True
            if merge_blocks(graph):
                changed = True
            if not changed:
                return modified
            modified = True

        logger.debug(
            "Transform pipeline reached iteration cap",
            max_iterations=self.max_iterations,
            blocks=len(graph.blocks),
        )
        return modified
