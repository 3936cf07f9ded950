from typing import Dict

import structlog

from deobfuscator.core.basic_block import BasicBlock
from deobfuscator.core.block_graph import BlockGraph

logger = structlog.get_logger()


def find_reachable_blocks(graph: BlockGraph) -> Dict[int, BasicBlock]:
    """
    Compute all blocks reachable from the entry block.

    A region's handler (and filter) blocks become reachable as soon as one
    of its protected blocks is.

    Returns:
        Dictionary mapping id(block) to the reachable block
    """
    reachable: Dict[int, BasicBlock] = {}
    worklist = [graph.entry]
    pending_regions = list(graph.regions)
    while worklist:
        while worklist:
            block = worklist.pop()
            if id(block) in reachable:
                continue
            reachable[id(block)] = block
            for succ in block.successors():
                if id(succ) not in reachable:
                    worklist.append(succ)

        still_pending = []
        for region in pending_regions:
            if any(id(b) in reachable for b in graph.try_blocks(region)):
                worklist.append(region.handler_first)
                if region.filter_first is not None:
                    worklist.append(region.filter_first)
            else:
                still_pending.append(region)
        pending_regions = still_pending
    return reachable


def remove_dead_blocks(graph: BlockGraph) -> int:
    """
    Remove blocks not reachable from the entry block.

    Returns:
        Number of removed blocks
    """
    reachable = find_reachable_blocks(graph)
    dead = [block for block in graph.blocks if id(block) not in reachable]
    if not dead:
        return 0
    graph.remove(dead)
    logger.debug("Removed dead blocks", count=len(dead), remaining=len(graph.blocks))
    return len(dead)
