"""
Equation branch simplification.

Flattening obfuscators hide a constant condition behind a call to a boolean
stub method:

    call     bool Stub()
    brtrue   TARGET
    pop

When the stub's body always returns the same literal, the call and the
conditional branch are rewritten in place into ``nop`` and ``br``/``nop``.
The ``pop`` is left untouched.
"""

from enum import Enum
from typing import List, Optional

import structlog

from deobfuscator.core.instruction import Instruction
from deobfuscator.core.method import BOOLEAN_TYPE, MethodDef, resolve_method_def
from deobfuscator.core.opcodes import Opcode

logger = structlog.get_logger()


class PredicateKind(Enum):
    ALWAYS_FALSE = "always_false"
    ALWAYS_TRUE = "always_true"
    UNKNOWN = "unknown"


# (branch is brtrue, classification) -> new branch opcode
EQUATION_TRUTH_TABLE = {
    (True, PredicateKind.ALWAYS_FALSE): Opcode.NOP,
    (True, PredicateKind.ALWAYS_TRUE): Opcode.BR,
    (False, PredicateKind.ALWAYS_FALSE): Opcode.BR,
    (False, PredicateKind.ALWAYS_TRUE): Opcode.NOP,
    (True, PredicateKind.UNKNOWN): Opcode.NOP,
    (False, PredicateKind.UNKNOWN): Opcode.BR,
}


def has_switch(method) -> bool:
    """True if the method body contains a multi-way branch."""
    if method is None or not method.has_body:
        return False
    return any(instr.is_switch() for instr in method.body.instructions)


def classify_predicate(callee: MethodDef) -> Optional[PredicateKind]:
    """
    Classify what a boolean stub method always returns.

    Only the callee's second-to-last instruction is inspected: loading the
    literal 0 means always false, anything else counts as always true.
    Returns None when the body is too short to have that instruction.
    """
    if callee.return_type != BOOLEAN_TYPE:
        return PredicateKind.UNKNOWN
    body = callee.body.instructions
    if len(body) < 2:
        return None
    if body[-2].get_ldc_i4_value() == 0:
        return PredicateKind.ALWAYS_FALSE
    return PredicateKind.ALWAYS_TRUE


def _match_site(instructions: List[Instruction], i: int) -> Optional[MethodDef]:
    if i - 1 < 0 or i + 1 >= len(instructions):
        return None
    branch = instructions[i]
    if not (branch.is_brtrue() or branch.is_brfalse()):
        return None
    if instructions[i + 1].opcode != Opcode.POP:
        return None
    call = instructions[i - 1]
    if call.opcode != Opcode.CALL:
        return None
    return resolve_method_def(call.operand)


def simplify_equations(method) -> int:
    """
    Fold ``call; brtrue/brfalse; pop`` sites whose callee is a constant predicate.

    Returns:
        Number of rewritten sites
    """
    instructions = method.body.instructions
    rewritten = 0
    for i in range(len(instructions)):
        callee = _match_site(instructions, i)
        if callee is None or not callee.body.has_instructions:
            continue
        kind = classify_predicate(callee)
        if kind is None:
            continue

        call, branch = instructions[i - 1], instructions[i]
        new_opcode = EQUATION_TRUTH_TABLE[(branch.is_brtrue(), kind)]
        call.opcode, call.operand = Opcode.NOP, None
        if new_opcode == Opcode.NOP:
            branch.opcode, branch.operand = Opcode.NOP, None
        else:
            branch.opcode = new_opcode
        rewritten += 1
        logger.debug(
            "Simplified equation",
            method=method.full_name,
            callee=callee.full_name,
            predicate=kind.value,
            branch=new_opcode.mnemonic,
        )
    return rewritten
