import dataclasses
from typing import Iterable, List, Optional, Set, Tuple

import structlog

from deobfuscator.core.basic_block import BasicBlock, BlockKind
from deobfuscator.core.method import HandlerType
from deobfuscator.exceptions import BlockGraphError

logger = structlog.get_logger()


@dataclasses.dataclass(eq=False)
class ExceptionHandlerRegion:
    """
    A protected block range plus its handler block range.

    The ranges are inclusive and refer to blocks in the graph's layout
    order. A filter region, when present, runs from ``filter_first`` up to
    the block preceding ``handler_first``.
    """

    handler_type: HandlerType
    try_first: BasicBlock
    try_last: BasicBlock
    handler_first: BasicBlock
    handler_last: BasicBlock
    filter_first: Optional[BasicBlock] = None
    catch_type: Optional[str] = None


class BlockGraph:
    """
    All basic blocks of one method, in layout order (entry block first).

    The graph exclusively owns its blocks and the instructions in them while
    a pass runs.
    """

    def __init__(self, method=None, blocks=None, regions=None):
        self.method = method
        self.blocks: List[BasicBlock] = list(blocks or [])
        self.regions: List[ExceptionHandlerRegion] = list(regions or [])

    @property
    def entry(self) -> BasicBlock:
        if not self.blocks:
            raise BlockGraphError("Block graph has no blocks")
        return self.blocks[0]

    def index(self, block: BasicBlock) -> int:
        for i, candidate in enumerate(self.blocks):
            if candidate is block:
                return i
        raise BlockGraphError(f"{block!r} is not part of this graph")

    def next_block(self, block: BasicBlock) -> Optional[BasicBlock]:
        i = self.index(block) + 1
        return self.blocks[i] if i < len(self.blocks) else None

    def block_range(self, first: BasicBlock, last: BasicBlock) -> List[BasicBlock]:
        start, end = self.index(first), self.index(last)
        if end < start:
            raise BlockGraphError(f"Inverted block range {first.id}..{last.id}")
        return self.blocks[start : end + 1]

    def try_blocks(self, region: ExceptionHandlerRegion) -> List[BasicBlock]:
        return self.block_range(region.try_first, region.try_last)

    def handler_blocks(self, region: ExceptionHandlerRegion) -> List[BasicBlock]:
        """Handler blocks of a region, filter blocks included."""
        return self.block_range(
            region.filter_first or region.handler_first, region.handler_last
        )

    def edge_set(self) -> Set[Tuple[int, int, str]]:
        """Edges as (source index, destination index, edge kind) triples."""
        positions = {id(block): i for i, block in enumerate(self.blocks)}
        edges = set()
        for i, block in enumerate(self.blocks):
            if block.fall_through is not None:
                edges.add((i, positions[id(block.fall_through)], "fall_through"))
            for target in block.targets:
                edges.add((i, positions[id(target)], "target"))
        return edges

    def all_instructions(self):
        for block in self.blocks:
            yield from block.instructions

    def remove(self, blocks: Iterable[BasicBlock]) -> None:
        """
        Remove blocks from the graph.

        Handler regions are shrunk to their surviving blocks, or dropped when
        their protected or handler range becomes empty.

        Raises:
            BlockGraphError: If the entry block is removed or a surviving
                block still has an edge into a removed block
        """
        dead = {id(block): block for block in blocks}
        if not dead:
            return
        if id(self.entry) in dead:
            raise BlockGraphError("The entry block can't be removed")
        for block in self.blocks:
            if id(block) in dead:
                continue
            for succ in block.successors():
                if id(succ) in dead:
                    raise BlockGraphError(
                        f"{block.id} still has an edge to removed {succ.id}"
                    )

        surviving_regions = []
        for region in self.regions:
            shrunk = self._shrink_region(region, dead)
            if shrunk is None:
                logger.debug(
                    "Dropping exception handler region",
                    handler_type=region.handler_type.value,
                    try_start=region.try_first.id,
                )
                continue
            surviving_regions.append(shrunk)

        for block in dead.values():
            block.disconnect()
        self.blocks = [block for block in self.blocks if id(block) not in dead]
        self.regions = surviving_regions

    def _shrink_region(self, region, dead) -> Optional[ExceptionHandlerRegion]:
        def alive(blocks):
            return [block for block in blocks if id(block) not in dead]

        try_blocks = alive(self.try_blocks(region))
        handler_blocks = alive(
            self.block_range(region.handler_first, region.handler_last)
        )
        if not try_blocks or not handler_blocks:
            return None
        if id(region.handler_first) in dead:
            return None
        filter_first = None
        if region.filter_first is not None:
            filter_end = self.index(region.handler_first)
            filter_blocks = alive(self.blocks[self.index(region.filter_first) : filter_end])
            if not filter_blocks:
                return None
            filter_first = filter_blocks[0]
        return dataclasses.replace(
            region,
            try_first=try_blocks[0],
            try_last=try_blocks[-1],
            handler_first=handler_blocks[0],
            handler_last=handler_blocks[-1],
            filter_first=filter_first,
        )

    def is_region_boundary(self, first: BasicBlock, second: BasicBlock) -> bool:
        for region in self.regions:
            if second in (region.try_first, region.handler_first, region.filter_first):
                return True
            if first in (region.try_last, region.handler_last):
                return True
        return False

    def merge(self, first: BasicBlock, second: BasicBlock) -> BasicBlock:
        """
        Append ``second`` to ``first``.

        ``second`` must be the only successor of ``first``, reached either by
        fall-through or by a trailing unconditional branch, and ``first``
        must be its only predecessor. A trailing branch is dropped.
        """
        if first is second:
            raise BlockGraphError("Can't merge a block with itself")
        if first.kind not in (BlockKind.FALLTHROUGH, BlockKind.BRANCH):
            raise BlockGraphError(f"{first.id} doesn't end in a plain edge")
        if first.successors() != [second] or second.sources != [first]:
            raise BlockGraphError(f"{first.id} and {second.id} aren't a simple chain")
        if self.is_region_boundary(first, second):
            raise BlockGraphError(
                f"{first.id} and {second.id} are split by an exception handler boundary"
            )

        instructions = list(first.instructions)
        if first.kind == BlockKind.BRANCH:
            instructions.pop()
        fall_through, targets = second.fall_through, list(second.targets)
        second.disconnect()
        first.disconnect()
        first.instructions = instructions + second.instructions
        first.set_edges(fall_through, targets)

        for region in self.regions:
            if region.try_last is second:
                region.try_last = first
            if region.handler_last is second:
                region.handler_last = first
        self.blocks = [block for block in self.blocks if block is not second]
        return first

    def split(self, block: BasicBlock, index: int) -> BasicBlock:
        """
        Split ``block`` before instruction ``index``.

        The new block is placed right after ``block`` in the layout, takes
        over its outgoing edges and is reached from it by fall-through.
        """
        if not 0 < index < len(block.instructions):
            raise BlockGraphError(f"Can't split {block.id} at {index}")
        if block.instructions[index - 1].ends_block():
            raise BlockGraphError(f"Instruction {index - 1} of {block.id} ends the block")

        tail = BasicBlock(block.instructions[index:])
        fall_through, targets = block.fall_through, list(block.targets)
        block.disconnect()
        block.instructions = block.instructions[:index]
        tail.set_edges(fall_through, targets)
        block.set_edges(tail)

        position = self.index(block) + 1
        self.blocks.insert(position, tail)
        for region in self.regions:
            if region.try_last is block:
                region.try_last = tail
            if region.handler_last is block:
                region.handler_last = tail
        return tail

    def get_code(self):
        """Serialize the graph into a flat instruction list and handler table."""
        from deobfuscator.analysis.body_rebuilder import get_code

        return get_code(self)

    def repartition(self) -> None:
        """Re-derive blocks and edges from the current flat instruction order."""
        from deobfuscator.analysis.block_builder import build_block_graph

        instructions, handlers = self.get_code()
        rebuilt = build_block_graph(instructions, handlers, method=self.method)
        self.blocks = rebuilt.blocks
        self.regions = rebuilt.regions

    def __repr__(self) -> str:
        return f"BlockGraph(blocks={len(self.blocks)}, regions={len(self.regions)})"
