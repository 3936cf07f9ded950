"""Short/long branch form normalisation for a method body."""

from deobfuscator.core.instruction import update_offsets
from deobfuscator.core.opcodes import LONG_TO_SHORT_BRANCH, SHORT_TO_LONG_BRANCH


def simplify_branches(body) -> int:
    """Rewrite every short branch into its long form. Returns the number changed."""
    changed = 0
    for instr in body.instructions:
        long_form = SHORT_TO_LONG_BRANCH.get(instr.opcode)
        if long_form is not None:
            instr.opcode = long_form
            changed += 1
    update_offsets(body.instructions)
    return changed


def optimize_branches(body) -> int:
    """
    Rewrite long branches into short ones where the displacement fits.

    Shortening a branch only brings other branch targets closer, so each
    sweep keeps what it shortened and the pass repeats until a sweep
    changes nothing. Returns the number of branches shortened.
    """
    shortened = 0
    while True:
        update_offsets(body.instructions)
        changed = False
        for instr in body.instructions:
            short_form = LONG_TO_SHORT_BRANCH.get(instr.opcode)
            if short_form is None or instr.operand is None:
                continue
            # Displacement is relative to the end of the short instruction
            displacement = instr.operand.offset - (instr.offset + 2)
            if -128 <= displacement <= 127:
                instr.opcode = short_form
                shortened += 1
                changed = True
        if not changed:
            return shortened
