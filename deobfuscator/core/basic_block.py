from enum import Enum
from typing import List, Optional

from deobfuscator.core.instruction import Instruction
from deobfuscator.core.opcodes import FlowControl, Opcode


class BlockKind(Enum):
    FALLTHROUGH = "fallthrough"
    BRANCH = "branch"
    COND_BRANCH = "cond_branch"
    SWITCH = "switch"
    EXIT = "exit"


class BasicBlock:
    def __init__(self, instructions=None):
        self.instructions: List[Instruction] = list(instructions or [])
        self.fall_through: Optional["BasicBlock"] = None
        self.targets: List["BasicBlock"] = []
        self.sources: List["BasicBlock"] = []  # Predecessors

    @property
    def first_instruction(self) -> Instruction:
        return self.instructions[0]

    @property
    def last_instruction(self) -> Instruction:
        return self.instructions[-1]

    @property
    def start_offset(self) -> int:
        return self.instructions[0].offset if self.instructions else -1

    @property
    def id(self) -> str:
        return f"block_{self.start_offset}"

    @property
    def kind(self) -> BlockKind:
        """Classify the block by its terminal instruction."""
        if not self.instructions:
            return BlockKind.FALLTHROUGH
        flow = self.last_instruction.flow_control
        if flow == FlowControl.BRANCH:
            return BlockKind.BRANCH
        if flow == FlowControl.COND_BRANCH:
            return BlockKind.COND_BRANCH
        if flow == FlowControl.SWITCH:
            return BlockKind.SWITCH
        if flow in (FlowControl.RETURN, FlowControl.THROW):
            return BlockKind.EXIT
        return BlockKind.FALLTHROUGH

    def successors(self) -> List["BasicBlock"]:
        result = []
        for block in self.targets + [self.fall_through]:
            if block is not None and block not in result:
                result.append(block)
        return result

    def set_edges(self, fall_through, targets=()) -> None:
        """Replace all outgoing edges and keep the successors' sources in sync."""
        old = self.successors()
        self.fall_through = fall_through
        self.targets = list(targets)
        new = self.successors()
        for block in old:
            if block not in new:
                block.sources.remove(self)
        for block in new:
            if self not in block.sources:
                block.sources.append(self)

    def set_fall_through(self, block) -> None:
        self.set_edges(block, self.targets)

    def set_targets(self, blocks) -> None:
        self.set_edges(self.fall_through, blocks)

    def disconnect(self) -> None:
        self.set_edges(None, [])

    def remove_nops(self) -> bool:
        """Drop nop instructions, keeping one if the block would be left empty."""
        kept = [instr for instr in self.instructions if instr.opcode != Opcode.NOP]
        if len(kept) == len(self.instructions):
            return False
        if not kept:
            if len(self.instructions) == 1:
                return False
            kept = self.instructions[:1]
        self.instructions = kept
        return True

    def __repr__(self) -> str:
        return (
            f"BasicBlock(start=0x{max(self.start_offset, 0):x}, "
            f"kind={self.kind.value}, instructions={len(self.instructions)})"
        )
