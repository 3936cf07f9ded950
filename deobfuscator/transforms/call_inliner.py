"""
Inlining of trivial call targets.

A ``call`` is replaced when the callee's body is one of

    <constant load>; ret
    ldarg.0 .. ldarg.N-1; <call/callvirt/newobj>; ret
    ldarg.0 .. ldarg.N-1; <arithmetic or compare op>; ret

The call instruction is rewritten in place, so branches and handler
boundaries referencing it stay valid.
"""

from typing import Dict, List, Optional, Set

import structlog

from deobfuscator.core.basic_block import BasicBlock
from deobfuscator.core.block_graph import BlockGraph
from deobfuscator.core.instruction import Instruction
from deobfuscator.core.method import MethodDef, resolve_method_def
from deobfuscator.core.opcodes import (
    BINARY_OPCODES,
    CALL_OPCODES,
    LDC_I4_MACROS,
    UNARY_OPCODES,
    Opcode,
)
from deobfuscator.transforms.base import TransformPass

logger = structlog.get_logger()

CONSTANT_LOAD_OPCODES = frozenset(
    set(LDC_I4_MACROS)
    | {Opcode.LDC_I4_S, Opcode.LDC_I4, Opcode.LDC_I8, Opcode.LDNULL, Opcode.LDSTR}
)


def _significant(callee: MethodDef) -> List[Instruction]:
    return [instr for instr in callee.body.instructions if instr.opcode != Opcode.NOP]


def _forwards_arguments(instructions: List[Instruction], count: int) -> bool:
    """True if the first ``count`` instructions load the arguments in order."""
    if len(instructions) < count:
        return False
    return all(instructions[i].get_ldarg_index() == i for i in range(count))


class CallInliner(TransformPass):
    name = "call_inliner"

    def __init__(self, inline_instance_methods: bool = False):
        self.inline_instance_methods = inline_instance_methods
        # id(call site) -> callees already inlined into that site
        self._chains: Dict[int, Set[MethodDef]] = {}
        # Keeps recorded sites alive so their ids aren't reused
        self._sites: Dict[int, Instruction] = {}

    def initialize(self, graph: BlockGraph) -> None:
        self._chains = {}
        self._sites = {}

    def apply(self, graph: BlockGraph) -> bool:
        changed = False
        for block in graph.blocks:
            i = 0
            while i < len(block.instructions):
                instr = block.instructions[i]
                if instr.opcode == Opcode.CALL:
                    inserted = self._inline_call(graph, block, i)
                    if inserted is not None:
                        changed = True
                        i += inserted
                i += 1
        return changed

    def _can_inline(self, graph: BlockGraph, site: Instruction, callee: MethodDef) -> bool:
        if callee is graph.method:
            return False
        if callee.body.exception_handlers:
            return False
        if not callee.is_static and not self.inline_instance_methods:
            return False
        return callee not in self._chains.get(id(site), ())

    def _inline_call(self, graph: BlockGraph, block: BasicBlock, index: int) -> Optional[int]:
        """
        Try to inline the call at ``block.instructions[index]``.

        Returns:
            Number of instructions inserted after the call site, or None if
            the call was left alone
        """
        site = block.instructions[index]
        callee = resolve_method_def(site.operand)
        if callee is None or not callee.body.has_instructions:
            return None
        if not self._can_inline(graph, site, callee):
            return None

        body = _significant(callee)
        if len(body) < 2 or body[-1].opcode != Opcode.RET:
            return None
        arg_count = len(callee.parameters) + (0 if callee.is_static else 1)
        if (
            len(body) == 2
            and body[0].opcode in CONSTANT_LOAD_OPCODES
            and not callee.returns_void
        ):
            return self._inline_constant(block, index, callee, body[0], arg_count)
        return self._inline_forwarder(site, callee, body, arg_count)

    def _inline_constant(self, block, index, callee, load, arg_count) -> int:
        site = block.instructions[index]
        self._record(site, callee)
        if arg_count == 0:
            site.opcode, site.operand = load.opcode, load.operand
            self._log_inlined(site, callee, "constant")
            return 0
        # The arguments are still on the stack and have to be discarded
        site.opcode, site.operand = Opcode.POP, None
        extra = [Instruction(Opcode.POP) for _ in range(arg_count - 1)]
        extra.append(Instruction(load.opcode, load.operand))
        block.instructions[index + 1 : index + 1] = extra
        self._log_inlined(site, callee, "constant")
        return len(extra)

    def _inline_forwarder(self, site, callee, body, arg_count) -> Optional[int]:
        if len(body) != arg_count + 2:
            return None
        if not _forwards_arguments(body, arg_count):
            return None
        inner = body[arg_count]
        if inner.opcode in CALL_OPCODES:
            pattern = "forwarder"
        elif inner.opcode in BINARY_OPCODES or inner.opcode in UNARY_OPCODES:
            pattern = "operation"
        else:
            return None

        site_effect = site.stack_effect()
        inner_effect = inner.stack_effect()
        if site_effect is None or site_effect != inner_effect:
            return None
        self._record(site, callee)
        site.opcode, site.operand = inner.opcode, inner.operand
        self._log_inlined(site, callee, pattern)
        return 0

    def _record(self, site: Instruction, callee: MethodDef) -> None:
        self._chains.setdefault(id(site), set()).add(callee)
        self._sites[id(site)] = site

    def _log_inlined(self, site, callee, pattern) -> None:
        logger.debug(
            "Inlined call",
            callee=callee.full_name,
            pattern=pattern,
            replacement=site.opcode.mnemonic,
        )
