"""
Minimal method/metadata model consumed by the deobfuscator.

A binary loader is expected to produce these objects; the engine only reads
them and writes a rewritten body back through restore_body().
"""

import dataclasses
from enum import Enum
from typing import List, Optional, Sequence

from deobfuscator.core.instruction import Instruction, update_offsets

BOOLEAN_TYPE = "System.Boolean"
VOID_TYPE = "System.Void"


class HandlerType(Enum):
    CATCH = "catch"
    FILTER = "filter"
    FINALLY = "finally"
    FAULT = "fault"


@dataclasses.dataclass(eq=False)
class ExceptionHandler:
    """
    One entry of a method's exception-handler table.

    ``try_end`` and ``handler_end`` are exclusive; None means the end of the
    method body.
    """

    handler_type: HandlerType
    try_start: Instruction
    try_end: Optional[Instruction]
    handler_start: Instruction
    handler_end: Optional[Instruction]
    filter_start: Optional[Instruction] = None
    catch_type: Optional[str] = None

    def boundaries(self) -> List[Instruction]:
        return [
            instr
            for instr in (
                self.try_start,
                self.try_end,
                self.handler_start,
                self.handler_end,
                self.filter_start,
            )
            if instr is not None
        ]


@dataclasses.dataclass(eq=False)
class MethodBody:
    instructions: List[Instruction] = dataclasses.field(default_factory=list)
    exception_handlers: List[ExceptionHandler] = dataclasses.field(
        default_factory=list
    )

    @property
    def has_instructions(self) -> bool:
        return len(self.instructions) > 0


class MethodRef:
    """A call target that can't be resolved to a definition (external or virtual)."""

    def __init__(
        self,
        name: str,
        declaring_type: str,
        return_type: str = VOID_TYPE,
        parameters: Sequence[str] = (),
        is_static: bool = True,
    ):
        self.name = name
        self.declaring_type = declaring_type
        self.return_type = return_type
        self.parameters = list(parameters)
        self.is_static = is_static

    @property
    def returns_void(self) -> bool:
        return self.return_type == VOID_TYPE

    @property
    def reference_name(self) -> str:
        return f"{self.declaring_type}::{self.name}"

    @property
    def full_name(self) -> str:
        return (
            f"{self.return_type} {self.reference_name}"
            f"({','.join(self.parameters)})"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.full_name})"


class MethodDef(MethodRef):
    """A method definition. Identity is object identity."""

    def __init__(
        self,
        name: str,
        declaring_type: str,
        return_type: str = VOID_TYPE,
        parameters: Sequence[str] = (),
        is_static: bool = True,
        body: Optional[MethodBody] = None,
    ):
        super().__init__(name, declaring_type, return_type, parameters, is_static)
        self.body = body

    @property
    def has_body(self) -> bool:
        return self.body is not None

    __hash__ = object.__hash__
    __eq__ = object.__eq__


def resolve_method_def(operand) -> Optional[MethodDef]:
    """Resolve a call operand to a definition with an inspectable body."""
    if isinstance(operand, MethodDef) and operand.has_body:
        return operand
    return None


def restore_body(
    method: MethodDef,
    instructions: List[Instruction],
    exception_handlers: List[ExceptionHandler],
) -> None:
    """Replace the method's body with a rebuilt stream and handler table."""
    if method.body is None:
        method.body = MethodBody()
    method.body.instructions[:] = instructions
    method.body.exception_handlers[:] = exception_handlers
    update_offsets(method.body.instructions)
