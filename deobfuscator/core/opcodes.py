"""
CIL opcode definitions and utilities for the control-flow deobfuscator.
"""

from enum import Enum, IntEnum


class Opcode(IntEnum):
    """CIL Opcodes (the subset understood by the engine)"""

    NOP = 0x00
    BREAK = 0x01
    LDARG_0 = 0x02
    LDARG_1 = 0x03
    LDARG_2 = 0x04
    LDARG_3 = 0x05
    LDLOC_0 = 0x06
    LDLOC_1 = 0x07
    LDLOC_2 = 0x08
    LDLOC_3 = 0x09
    STLOC_0 = 0x0A
    STLOC_1 = 0x0B
    STLOC_2 = 0x0C
    STLOC_3 = 0x0D
    LDARG_S = 0x0E
    STARG_S = 0x10
    LDLOC_S = 0x11
    STLOC_S = 0x13
    LDNULL = 0x14
    LDC_I4_M1 = 0x15
    LDC_I4_0 = 0x16
    LDC_I4_1 = 0x17
    LDC_I4_2 = 0x18
    LDC_I4_3 = 0x19
    LDC_I4_4 = 0x1A
    LDC_I4_5 = 0x1B
    LDC_I4_6 = 0x1C
    LDC_I4_7 = 0x1D
    LDC_I4_8 = 0x1E
    LDC_I4_S = 0x1F
    LDC_I4 = 0x20
    LDC_I8 = 0x21
    DUP = 0x25
    POP = 0x26
    CALL = 0x28
    RET = 0x2A

    BR_S = 0x2B
    BRFALSE_S = 0x2C
    BRTRUE_S = 0x2D
    BEQ_S = 0x2E
    BGE_S = 0x2F
    BGT_S = 0x30
    BLE_S = 0x31
    BLT_S = 0x32
    BNE_UN_S = 0x33
    BR = 0x38
    BRFALSE = 0x39
    BRTRUE = 0x3A
    BEQ = 0x3B
    BGE = 0x3C
    BGT = 0x3D
    BLE = 0x3E
    BLT = 0x3F
    BNE_UN = 0x40
    SWITCH = 0x45

    ADD = 0x58
    SUB = 0x59
    MUL = 0x5A
    DIV = 0x5B
    DIV_UN = 0x5C
    REM = 0x5D
    REM_UN = 0x5E
    AND = 0x5F
    OR = 0x60
    XOR = 0x61
    SHL = 0x62
    SHR = 0x63
    SHR_UN = 0x64
    NEG = 0x65
    NOT = 0x66

    CALLVIRT = 0x6F
    LDSTR = 0x72
    NEWOBJ = 0x73
    THROW = 0x7A
    LDFLD = 0x7B
    STFLD = 0x7D
    LDSFLD = 0x7E
    STSFLD = 0x80

    ENDFINALLY = 0xDC
    LEAVE = 0xDD
    LEAVE_S = 0xDE

    CEQ = 0xFE01
    CGT = 0xFE02
    CGT_UN = 0xFE03
    CLT = 0xFE04
    CLT_UN = 0xFE05
    ENDFILTER = 0xFE11
    RETHROW = 0xFE1A

    @property
    def mnemonic(self) -> str:
        """Textual name as used in disassembly listings (``brtrue.s``)."""
        return self.name.lower().replace("_", ".")

    @property
    def size(self) -> int:
        """Size of the encoded opcode in bytes."""
        return 2 if self.value > 0xFF else 1


class FlowControl(Enum):
    NEXT = "next"
    CALL = "call"
    BRANCH = "branch"
    COND_BRANCH = "cond_branch"
    SWITCH = "switch"
    RETURN = "return"
    THROW = "throw"


class OperandType(Enum):
    NONE = "none"
    SHORT_BRANCH = "short_branch"
    BRANCH = "branch"
    SHORT_INT = "short_int"
    INT = "int"
    LONG = "long"
    SHORT_VAR = "short_var"
    METHOD = "method"
    FIELD = "field"
    STRING = "string"
    SWITCH = "switch"


# Encoded operand size in bytes (switch is variable)
OPERAND_SIZES = {
    OperandType.NONE: 0,
    OperandType.SHORT_BRANCH: 1,
    OperandType.BRANCH: 4,
    OperandType.SHORT_INT: 1,
    OperandType.INT: 4,
    OperandType.LONG: 8,
    OperandType.SHORT_VAR: 1,
    OperandType.METHOD: 4,
    OperandType.FIELD: 4,
    OperandType.STRING: 4,
}


# Map from mnemonic to opcode, used by the listing codec
OPCODE_BY_MNEMONIC = {op.mnemonic: op for op in Opcode}

LDC_I4_MACROS = {Opcode(Opcode.LDC_I4_M1 + i): i - 1 for i in range(10)}
LDARG_MACROS = {Opcode(Opcode.LDARG_0 + i): i for i in range(4)}
LDLOC_MACROS = {Opcode(Opcode.LDLOC_0 + i): i for i in range(4)}
STLOC_MACROS = {Opcode(Opcode.STLOC_0 + i): i for i in range(4)}

SHORT_TO_LONG_BRANCH = {
    Opcode.BR_S: Opcode.BR,
    Opcode.BRFALSE_S: Opcode.BRFALSE,
    Opcode.BRTRUE_S: Opcode.BRTRUE,
    Opcode.BEQ_S: Opcode.BEQ,
    Opcode.BGE_S: Opcode.BGE,
    Opcode.BGT_S: Opcode.BGT,
    Opcode.BLE_S: Opcode.BLE,
    Opcode.BLT_S: Opcode.BLT,
    Opcode.BNE_UN_S: Opcode.BNE_UN,
    Opcode.LEAVE_S: Opcode.LEAVE,
}
LONG_TO_SHORT_BRANCH = {long: short for short, long in SHORT_TO_LONG_BRANCH.items()}

BRTRUE_OPCODES = frozenset({Opcode.BRTRUE, Opcode.BRTRUE_S})
BRFALSE_OPCODES = frozenset({Opcode.BRFALSE, Opcode.BRFALSE_S})
UNCONDITIONAL_BRANCHES = frozenset(
    {Opcode.BR, Opcode.BR_S, Opcode.LEAVE, Opcode.LEAVE_S}
)
CONDITIONAL_BRANCHES = frozenset(
    op
    for op in list(SHORT_TO_LONG_BRANCH) + list(SHORT_TO_LONG_BRANCH.values())
    if op not in UNCONDITIONAL_BRANCHES
)
CALL_OPCODES = frozenset({Opcode.CALL, Opcode.CALLVIRT, Opcode.NEWOBJ})

FLOW_CONTROL = {op: FlowControl.NEXT for op in Opcode}
FLOW_CONTROL.update({op: FlowControl.BRANCH for op in UNCONDITIONAL_BRANCHES})
FLOW_CONTROL.update({op: FlowControl.COND_BRANCH for op in CONDITIONAL_BRANCHES})
FLOW_CONTROL.update({op: FlowControl.CALL for op in CALL_OPCODES})
FLOW_CONTROL[Opcode.SWITCH] = FlowControl.SWITCH
FLOW_CONTROL[Opcode.RET] = FlowControl.RETURN
for _op in (Opcode.THROW, Opcode.RETHROW, Opcode.ENDFINALLY, Opcode.ENDFILTER):
    FLOW_CONTROL[_op] = FlowControl.THROW

OPERAND_TYPES = {op: OperandType.NONE for op in Opcode}
OPERAND_TYPES.update({op: OperandType.SHORT_BRANCH for op in SHORT_TO_LONG_BRANCH})
OPERAND_TYPES.update(
    {op: OperandType.BRANCH for op in SHORT_TO_LONG_BRANCH.values()}
)
OPERAND_TYPES.update(
    {
        Opcode.LDARG_S: OperandType.SHORT_VAR,
        Opcode.STARG_S: OperandType.SHORT_VAR,
        Opcode.LDLOC_S: OperandType.SHORT_VAR,
        Opcode.STLOC_S: OperandType.SHORT_VAR,
        Opcode.LDC_I4_S: OperandType.SHORT_INT,
        Opcode.LDC_I4: OperandType.INT,
        Opcode.LDC_I8: OperandType.LONG,
        Opcode.CALL: OperandType.METHOD,
        Opcode.CALLVIRT: OperandType.METHOD,
        Opcode.NEWOBJ: OperandType.METHOD,
        Opcode.LDSTR: OperandType.STRING,
        Opcode.LDFLD: OperandType.FIELD,
        Opcode.STFLD: OperandType.FIELD,
        Opcode.LDSFLD: OperandType.FIELD,
        Opcode.STSFLD: OperandType.FIELD,
        Opcode.SWITCH: OperandType.SWITCH,
    }
)

# Map from opcode to (pops, pushes). Calls and ret depend on the operand or
# the enclosing method and are resolved by Instruction.stack_effect().
STACK_EFFECTS = {
    Opcode.NOP: (0, 0),
    Opcode.BREAK: (0, 0),
    Opcode.LDARG_S: (0, 1),
    Opcode.STARG_S: (1, 0),
    Opcode.LDLOC_S: (0, 1),
    Opcode.STLOC_S: (1, 0),
    Opcode.LDNULL: (0, 1),
    Opcode.LDC_I4_S: (0, 1),
    Opcode.LDC_I4: (0, 1),
    Opcode.LDC_I8: (0, 1),
    Opcode.DUP: (1, 2),
    Opcode.POP: (1, 0),
    Opcode.BR: (0, 0),
    Opcode.BR_S: (0, 0),
    Opcode.LEAVE: (0, 0),
    Opcode.LEAVE_S: (0, 0),
    Opcode.BRFALSE: (1, 0),
    Opcode.BRFALSE_S: (1, 0),
    Opcode.BRTRUE: (1, 0),
    Opcode.BRTRUE_S: (1, 0),
    Opcode.SWITCH: (1, 0),
    Opcode.NEG: (1, 1),
    Opcode.NOT: (1, 1),
    Opcode.LDSTR: (0, 1),
    Opcode.THROW: (1, 0),
    Opcode.RETHROW: (0, 0),
    Opcode.LDFLD: (1, 1),
    Opcode.STFLD: (2, 0),
    Opcode.LDSFLD: (0, 1),
    Opcode.STSFLD: (1, 0),
    Opcode.ENDFINALLY: (0, 0),
    Opcode.ENDFILTER: (1, 0),
}

# Two-operand compare-and-branch
for _op in CONDITIONAL_BRANCHES - BRTRUE_OPCODES - BRFALSE_OPCODES:
    STACK_EFFECTS[_op] = (2, 0)

# Binary arithmetic and comparisons
BINARY_OPCODES = frozenset(
    {
        Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV, Opcode.DIV_UN,
        Opcode.REM, Opcode.REM_UN, Opcode.AND, Opcode.OR, Opcode.XOR,
        Opcode.SHL, Opcode.SHR, Opcode.SHR_UN,
        Opcode.CEQ, Opcode.CGT, Opcode.CGT_UN, Opcode.CLT, Opcode.CLT_UN,
    }
)
UNARY_OPCODES = frozenset({Opcode.NEG, Opcode.NOT})
for _op in BINARY_OPCODES:
    STACK_EFFECTS[_op] = (2, 1)

for _op in LDC_I4_MACROS:
    STACK_EFFECTS[_op] = (0, 1)
for _op in LDARG_MACROS:
    STACK_EFFECTS[_op] = (0, 1)
for _op in LDLOC_MACROS:
    STACK_EFFECTS[_op] = (0, 1)
for _op in STLOC_MACROS:
    STACK_EFFECTS[_op] = (1, 0)

# Instructions that only push a value and have no other effect
PURE_PUSH_OPCODES = frozenset(
    set(LDC_I4_MACROS)
    | set(LDARG_MACROS)
    | set(LDLOC_MACROS)
    | {
        Opcode.LDC_I4_S, Opcode.LDC_I4, Opcode.LDC_I8, Opcode.LDNULL,
        Opcode.LDSTR, Opcode.LDARG_S, Opcode.LDLOC_S,
    }
)


def get_flow_control(opcode):
    return FLOW_CONTROL.get(opcode, FlowControl.NEXT)


def get_operand_type(opcode):
    return OPERAND_TYPES.get(opcode, OperandType.NONE)


def get_stack_effect(opcode):
    """
    Get the fixed stack effect of an opcode.

    Args:
        opcode: The opcode value

    Returns:
        Tuple (pops, pushes), or None for opcodes whose effect depends on
        the operand (calls) or the enclosing method (ret)
    """
    return STACK_EFFECTS.get(opcode)


def ldc_i4_opcode_for(value: int):
    """Pick the shortest ldc.i4 form for a 32-bit literal."""
    if -1 <= value <= 8:
        return Opcode(Opcode.LDC_I4_0 + value)
    if -128 <= value <= 127:
        return Opcode.LDC_I4_S
    return Opcode.LDC_I4
