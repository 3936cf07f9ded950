"""
Per-method entry points of the control-flow deobfuscator.

deobfuscate() runs the full cleanup once per method and job, and restores
the original body if anything goes wrong. deobfuscate_blocks() is the
lighter, ungated variant used to tidy a body after other rewrites.
"""

import dataclasses
from enum import Flag
from typing import List, Optional, Sequence, Tuple

import structlog

from deobfuscator.analysis.block_builder import build_method_graph
from deobfuscator.analysis.branch_cleanup import optimize_branches, simplify_branches
from deobfuscator.analysis.dead_blocks import remove_dead_blocks
from deobfuscator.analysis.equation_simplifier import has_switch, simplify_equations
from deobfuscator.config import DeobfuscatorConfig
from deobfuscator.core.deobfuscation_state import DeobfuscationState, MethodFlags
from deobfuscator.core.instruction import Instruction
from deobfuscator.core.method import MethodDef, restore_body
from deobfuscator.exceptions import InvalidMethodBodyError
from deobfuscator.transforms.base import TransformPass
from deobfuscator.transforms.pipeline import TransformPipeline

logger = structlog.get_logger()


class SimpleDeobfuscatorFlags(Flag):
    NONE = 0
    DISABLE_CONSTANTS_FOLDER_EXTRA_INSTRS = 2

    @classmethod
    def from_config(cls, config: DeobfuscatorConfig) -> "SimpleDeobfuscatorFlags":
        if config.disable_constants_folder_extra_instrs:
            return cls.DISABLE_CONSTANTS_FOLDER_EXTRA_INSTRS
        return cls.NONE


@dataclasses.dataclass
class CleanupResult:
    """Outcome of deobfuscate_blocks(). The body is unchanged when ``ok`` is False."""

    ok: bool
    error: Optional[Exception] = None

    def __bool__(self) -> bool:
        return self.ok


class BodySnapshot:
    """Saved copy of a method body that can be put back after a failed rewrite."""

    def __init__(self, method: MethodDef):
        self.method = method
        self.instructions = list(method.body.instructions)
        self.exception_handlers = list(method.body.exception_handlers)
        # Instructions are rewritten in place, so their fields are saved too
        self.fields: List[Tuple[Instruction, object, object, int]] = []
        for instr in self.instructions:
            operand = instr.operand
            if isinstance(operand, list):
                operand = list(operand)
            self.fields.append((instr, instr.opcode, operand, instr.offset))

    def restore(self) -> None:
        for instr, opcode, operand, offset in self.fields:
            instr.opcode, instr.operand, instr.offset = opcode, operand, offset
        body = self.method.body
        body.instructions[:] = self.instructions
        body.exception_handlers[:] = self.exception_handlers


def _has_instructions(method) -> bool:
    return method is not None and method.has_body and method.body.has_instructions


def _make_pipeline(
    config: DeobfuscatorConfig,
    passes: Optional[Sequence[TransformPass]] = None,
    inline_calls: bool = True,
) -> TransformPipeline:
    flags = SimpleDeobfuscatorFlags.from_config(config)
    return TransformPipeline(
        passes,
        disable_extra_instructions=bool(
            flags & SimpleDeobfuscatorFlags.DISABLE_CONSTANTS_FOLDER_EXTRA_INSTRS
        ),
        max_iterations=config.max_iterations,
        inline_instance_methods=config.inline_instance_methods,
        inline_calls=inline_calls,
    )


def _run_full_cleanup(method: MethodDef, config, passes) -> None:
    if has_switch(method):
        simplified = simplify_equations(method)
        if simplified:
            logger.debug("Simplified equation sites", method=method.full_name, count=simplified)
    graph = build_method_graph(method)
    _make_pipeline(config, passes).run(graph)
    remove_dead_blocks(graph)
    instructions, handlers = graph.get_code()
    restore_body(method, instructions, handlers)


def deobfuscate(
    method: Optional[MethodDef],
    state: DeobfuscationState,
    config: Optional[DeobfuscatorConfig] = None,
    passes: Optional[Sequence[TransformPass]] = None,
) -> bool:
    """
    Deobfuscate a method's control flow once per job.

    Args:
        method: The method to rewrite in place
        state: The job's state; marks the method as deobfuscated
        config: Pipeline settings, defaults when None
        passes: Extra transform passes run before the built-in ones

    Returns:
        False if the method was skipped (missing, without instructions or
        already deobfuscated), True once the cleanup ran. A failed cleanup
        restores the original body, logs a warning and still returns True.
    """
    if not _has_instructions(method):
        return False
    if state.check_and_set(method, MethodFlags.HAS_DEOBFUSCATED):
        return False

    config = config or DeobfuscatorConfig()
    snapshot = BodySnapshot(method)
    try:
        _run_full_cleanup(method, config, passes)
    except Exception as e:
        snapshot.restore()
        logger.warning("Couldn't deobfuscate method", method=method.full_name, error=str(e))
        return True

    logger.debug(
        "Deobfuscated method",
        method=method.full_name,
        instructions=len(method.body.instructions),
    )
    return True


def deobfuscate_blocks(
    method: Optional[MethodDef], config: Optional[DeobfuscatorConfig] = None
) -> CleanupResult:
    """
    Remove dead blocks, normalise branches and run the pipeline on a method.

    Unlike deobfuscate() this isn't gated by the job state and runs neither
    equation simplification nor call inlining. It never raises.
    """
    if not _has_instructions(method):
        return CleanupResult(False, InvalidMethodBodyError("Method has no instructions"))

    config = config or DeobfuscatorConfig()
    snapshot = BodySnapshot(method)
    try:
        graph = build_method_graph(method)
        remove_dead_blocks(graph)
        graph.repartition()
        restore_body(method, *graph.get_code())
        simplify_branches(method.body)
        optimize_branches(method.body)

        graph = build_method_graph(method)
        _make_pipeline(config, inline_calls=False).run(graph)
        graph.repartition()
        restore_body(method, *graph.get_code())
        # Rewrites may have pushed short branch targets out of range
        simplify_branches(method.body)
        optimize_branches(method.body)
    except Exception as e:
        snapshot.restore()
        logger.debug("Block cleanup failed", method=method.full_name, error=str(e))
        return CleanupResult(False, e)
    return CleanupResult(True)
