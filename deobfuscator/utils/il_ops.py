"""Utilities for 32-bit IL operation simulation."""
from typing import Optional

import z3

from deobfuscator.core.opcodes import Opcode

WORD_SIZE = 32
INT32_MIN = -(2 ** 31)


def bv(value: int) -> z3.BitVecRef:
    """Create a 32-bit constant."""
    return z3.BitVecVal(value, WORD_SIZE)


def bool_to_bv(cond: z3.BoolRef) -> z3.BitVecRef:
    return z3.If(cond, bv(1), bv(0))


def as_int32(expr) -> Optional[int]:
    """Signed value of an expression that simplifies to a literal, else None."""
    simplified = z3.simplify(expr)
    if z3.is_bv_value(simplified):
        return simplified.as_signed_long()
    return None


def as_bool(expr) -> Optional[bool]:
    """Truth value of a condition that simplifies to a literal, else None."""
    simplified = z3.simplify(expr)
    if z3.is_true(simplified):
        return True
    if z3.is_false(simplified):
        return False
    return None


def il_add(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    """Perform IL addition (wrapping at 2^32)."""
    return z3.simplify(a + b)


def il_sub(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    """Perform IL subtraction (wrapping at 2^32)."""
    return z3.simplify(a - b)


def il_mul(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    """Perform IL multiplication (wrapping at 2^32)."""
    return z3.simplify(a * b)


def il_div(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    """Signed division; None when it would throw (x / 0, INT32_MIN / -1)."""
    divisor, dividend = as_int32(b), as_int32(a)
    if divisor is None or divisor == 0:
        return None
    if divisor == -1 and dividend in (None, INT32_MIN):
        return None
    return z3.simplify(a / b)


def il_div_un(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    divisor = as_int32(b)
    if divisor is None or divisor == 0:
        return None
    return z3.simplify(z3.UDiv(a, b))


def il_rem(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    """Signed remainder, sign follows the dividend; None when it would throw."""
    divisor, dividend = as_int32(b), as_int32(a)
    if divisor is None or divisor == 0:
        return None
    if divisor == -1 and dividend in (None, INT32_MIN):
        return None
    return z3.simplify(z3.SRem(a, b))


def il_rem_un(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    divisor = as_int32(b)
    if divisor is None or divisor == 0:
        return None
    return z3.simplify(z3.URem(a, b))


def il_and(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(a & b)


def il_or(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(a | b)


def il_xor(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(a ^ b)


def _shift_amount(b: z3.BitVecRef) -> Optional[int]:
    # Shifts by 32 or more are unspecified
    amount = as_int32(b)
    if amount is None or not 0 <= amount < WORD_SIZE:
        return None
    return amount


def il_shl(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    if _shift_amount(b) is None:
        return None
    return z3.simplify(a << b)


def il_shr(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    """Arithmetic shift right."""
    if _shift_amount(b) is None:
        return None
    return z3.simplify(a >> b)


def il_shr_un(a: z3.BitVecRef, b: z3.BitVecRef) -> Optional[z3.BitVecRef]:
    """Logical shift right."""
    if _shift_amount(b) is None:
        return None
    return z3.simplify(z3.LShR(a, b))


def il_ceq(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(bool_to_bv(a == b))


def il_cgt(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(bool_to_bv(a > b))


def il_cgt_un(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(bool_to_bv(z3.UGT(a, b)))


def il_clt(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(bool_to_bv(a < b))


def il_clt_un(a: z3.BitVecRef, b: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(bool_to_bv(z3.ULT(a, b)))


def il_neg(a: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(-a)


def il_not(a: z3.BitVecRef) -> z3.BitVecRef:
    return z3.simplify(~a)


BINARY_OPS = {
    Opcode.ADD: il_add,
    Opcode.SUB: il_sub,
    Opcode.MUL: il_mul,
    Opcode.DIV: il_div,
    Opcode.DIV_UN: il_div_un,
    Opcode.REM: il_rem,
    Opcode.REM_UN: il_rem_un,
    Opcode.AND: il_and,
    Opcode.OR: il_or,
    Opcode.XOR: il_xor,
    Opcode.SHL: il_shl,
    Opcode.SHR: il_shr,
    Opcode.SHR_UN: il_shr_un,
    Opcode.CEQ: il_ceq,
    Opcode.CGT: il_cgt,
    Opcode.CGT_UN: il_cgt_un,
    Opcode.CLT: il_clt,
    Opcode.CLT_UN: il_clt_un,
}

UNARY_OPS = {
    Opcode.NEG: il_neg,
    Opcode.NOT: il_not,
}

# Conditional branches: opcode -> condition under which the branch is taken
BRANCH_CONDITIONS = {
    Opcode.BRTRUE: lambda v: v != 0,
    Opcode.BRTRUE_S: lambda v: v != 0,
    Opcode.BRFALSE: lambda v: v == 0,
    Opcode.BRFALSE_S: lambda v: v == 0,
    Opcode.BEQ: lambda a, b: a == b,
    Opcode.BEQ_S: lambda a, b: a == b,
    Opcode.BNE_UN: lambda a, b: a != b,
    Opcode.BNE_UN_S: lambda a, b: a != b,
    Opcode.BGE: lambda a, b: a >= b,
    Opcode.BGE_S: lambda a, b: a >= b,
    Opcode.BGT: lambda a, b: a > b,
    Opcode.BGT_S: lambda a, b: a > b,
    Opcode.BLE: lambda a, b: a <= b,
    Opcode.BLE_S: lambda a, b: a <= b,
    Opcode.BLT: lambda a, b: a < b,
    Opcode.BLT_S: lambda a, b: a < b,
}
