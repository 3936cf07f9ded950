from typing import List, Optional, Tuple

from deobfuscator.core.opcodes import (
    BRFALSE_OPCODES,
    BRTRUE_OPCODES,
    CONDITIONAL_BRANCHES,
    LDARG_MACROS,
    LDC_I4_MACROS,
    OPERAND_SIZES,
    Opcode,
    FlowControl,
    OperandType,
    get_flow_control,
    get_operand_type,
    get_stack_effect,
    ldc_i4_opcode_for,
)


class Instruction:
    """
    One opcode/operand record of a method body.

    Branch operands reference the target Instruction, switch operands are a
    list of Instructions and call operands are MethodDef/MethodRef objects.
    Rewrites change ``opcode``/``operand`` in place so references held by
    branches and handlers stay valid.
    """

    def __init__(self, opcode, operand=None, offset=0):
        self.opcode = Opcode(opcode)
        self.operand = operand
        self.offset = offset

    @classmethod
    def create_ldc_i4(cls, value: int) -> "Instruction":
        opcode = ldc_i4_opcode_for(value)
        return cls(opcode, None if opcode in LDC_I4_MACROS else value)

    @property
    def flow_control(self) -> FlowControl:
        return get_flow_control(self.opcode)

    @property
    def operand_type(self) -> OperandType:
        return get_operand_type(self.opcode)

    def size(self) -> int:
        if self.operand_type == OperandType.SWITCH:
            return self.opcode.size + 4 + 4 * len(self.operand or [])
        return self.opcode.size + OPERAND_SIZES[self.operand_type]

    def is_branch(self) -> bool:
        return self.flow_control in (FlowControl.BRANCH, FlowControl.COND_BRANCH)

    def is_conditional_branch(self) -> bool:
        return self.opcode in CONDITIONAL_BRANCHES

    def is_brtrue(self) -> bool:
        return self.opcode in BRTRUE_OPCODES

    def is_brfalse(self) -> bool:
        return self.opcode in BRFALSE_OPCODES

    def is_switch(self) -> bool:
        return self.opcode == Opcode.SWITCH

    def ends_block(self) -> bool:
        """True if the instruction following this one must start a new block."""
        return self.flow_control in (
            FlowControl.BRANCH,
            FlowControl.COND_BRANCH,
            FlowControl.SWITCH,
            FlowControl.RETURN,
            FlowControl.THROW,
        )

    def branch_targets(self) -> List["Instruction"]:
        if self.is_branch():
            return [self.operand]
        if self.is_switch():
            return list(self.operand or [])
        return []

    def is_ldc_i4(self) -> bool:
        return self.opcode in LDC_I4_MACROS or self.opcode in (
            Opcode.LDC_I4_S,
            Opcode.LDC_I4,
        )

    def get_ldc_i4_value(self) -> Optional[int]:
        if self.opcode in LDC_I4_MACROS:
            return LDC_I4_MACROS[self.opcode]
        if self.opcode in (Opcode.LDC_I4_S, Opcode.LDC_I4):
            return int(self.operand)
        return None

    def get_ldarg_index(self) -> Optional[int]:
        if self.opcode in LDARG_MACROS:
            return LDARG_MACROS[self.opcode]
        if self.opcode == Opcode.LDARG_S:
            return int(self.operand)
        return None

    def stack_effect(self, method=None) -> Optional[Tuple[int, int]]:
        """
        Get (pops, pushes) for this instruction.

        Args:
            method: The method containing the instruction, needed for ``ret``

        Returns:
            Tuple (pops, pushes) or None if it can't be determined
        """
        if self.opcode in (Opcode.CALL, Opcode.CALLVIRT, Opcode.NEWOBJ):
            callee = self.operand
            if callee is None or not hasattr(callee, "parameters"):
                return None
            pops = len(callee.parameters)
            if self.opcode == Opcode.NEWOBJ:
                return pops, 1
            if not callee.is_static:
                pops += 1
            return pops, 0 if callee.returns_void else 1
        if self.opcode == Opcode.RET:
            if method is None:
                return None
            return (0 if method.returns_void else 1), 0
        return get_stack_effect(self.opcode)

    def copy(self) -> "Instruction":
        operand = self.operand
        if isinstance(operand, list):
            operand = list(operand)
        return Instruction(self.opcode, operand, self.offset)

    def __repr__(self) -> str:
        operand = self.operand
        if isinstance(operand, Instruction):
            operand = f"IL_{operand.offset:04X}"
        elif isinstance(operand, list):
            operand = "(" + ", ".join(
                f"IL_{t.offset:04X}" if isinstance(t, Instruction) else repr(t)
                for t in operand
            ) + ")"
        elif hasattr(operand, "full_name"):
            operand = operand.full_name
        text = f"IL_{self.offset:04X}: {self.opcode.mnemonic}"
        return f"{text} {operand}" if operand is not None else text


def update_offsets(instructions: List[Instruction]) -> int:
    """Recompute instruction offsets from their encoded sizes. Returns the body size."""
    offset = 0
    for instr in instructions:
        instr.offset = offset
        offset += instr.size()
    return offset
