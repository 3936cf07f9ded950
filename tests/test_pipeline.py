import pytest

from deobfuscator.analysis.block_builder import build_block_graph
from deobfuscator.core.instruction import Instruction, update_offsets
from deobfuscator.core.method import MethodBody, MethodDef, MethodRef
from deobfuscator.core.opcodes import Opcode
from deobfuscator.transforms.base import TransformPass
from deobfuscator.transforms.call_inliner import CallInliner
from deobfuscator.transforms.constant_folder import ConstantFolder
from deobfuscator.transforms.pipeline import TransformPipeline, merge_blocks, remove_nops


class CountingPass(TransformPass):
    name = "counting"

    def __init__(self, changes=True):
        self.changes = changes
        self.initialized = 0
        self.applied = 0

    def initialize(self, graph):
        self.initialized += 1

    def apply(self, graph):
        self.applied += 1
        return self.changes


def create_test_graph(instructions):
    update_offsets(instructions)
    return build_block_graph(instructions)


def opcodes(graph):
    return [instr.opcode for instr in graph.all_instructions()]


def test_builtin_passes_run_after_user_passes():
    user = CountingPass(changes=False)
    pipeline = TransformPipeline([user], disable_extra_instructions=True)

    assert pipeline.passes[0] is user
    assert isinstance(pipeline.passes[1], CallInliner)
    assert isinstance(pipeline.passes[2], ConstantFolder)
    assert pipeline.passes[2].disable_extra_instructions


def test_inlining_can_be_turned_off():
    pipeline = TransformPipeline(inline_calls=False)

    assert len(pipeline.passes) == 1
    assert isinstance(pipeline.passes[0], ConstantFolder)


def test_iteration_cap():
    """Test that a pass that always reports changes is stopped."""
    always = CountingPass()
    graph = create_test_graph([Instruction(Opcode.RET)])

    assert TransformPipeline([always], max_iterations=5).run(graph)
    assert always.applied == 5
    assert always.initialized == 1


def test_clean_graph_is_left_alone():
    graph = create_test_graph(
        [Instruction(Opcode.LDARG_0), Instruction(Opcode.STLOC_0), Instruction(Opcode.RET)]
    )
    user = CountingPass(changes=False)

    assert not TransformPipeline([user]).run(graph)
    assert user.applied == 1


@pytest.mark.parametrize("max_iterations", [0, -3])
def test_invalid_iteration_cap(max_iterations):
    with pytest.raises(ValueError):
        TransformPipeline(max_iterations=max_iterations)


def test_opaque_branch_collapses():
    """Test that a constant-true branch leaves only the code it jumps to."""
    write_line = MethodRef("WriteLine", "System.Console", parameters=["System.String"])
    end = Instruction(Opcode.RET)
    graph = create_test_graph(
        [
            Instruction(Opcode.LDC_I4_1),
            Instruction(Opcode.BRTRUE_S, end),
            Instruction(Opcode.LDSTR, "unreachable"),
            Instruction(Opcode.CALL, write_line),
            end,
        ]
    )

    assert TransformPipeline().run(graph)
    assert opcodes(graph) == [Opcode.RET]
    assert len(graph.blocks) == 1


def test_inlined_predicate_is_folded():
    """Test that inlining feeds the constant folder within one run."""
    predicate = MethodDef(
        "IsLicensed",
        "Obfuscated",
        return_type="System.Boolean",
        body=MethodBody(instructions=[Instruction(Opcode.LDC_I4_0), Instruction(Opcode.RET)]),
    )
    write_line = MethodRef("WriteLine", "System.Console", parameters=["System.String"])
    end = Instruction(Opcode.RET)
    graph = create_test_graph(
        [
            Instruction(Opcode.CALL, predicate),
            Instruction(Opcode.BRFALSE, end),
            Instruction(Opcode.LDSTR, "licensed"),
            Instruction(Opcode.CALL, write_line),
            end,
        ]
    )

    assert TransformPipeline().run(graph)
    assert opcodes(graph) == [Opcode.RET]


def test_remove_nops_keeps_placeholder():
    graph = create_test_graph([Instruction(Opcode.NOP), Instruction(Opcode.NOP), Instruction(Opcode.RET)])
    assert remove_nops(graph)
    assert opcodes(graph) == [Opcode.RET]


def test_merge_blocks_joins_branch_chain():
    middle = Instruction(Opcode.LDARG_0)
    graph = create_test_graph(
        [Instruction(Opcode.BR, middle), middle, Instruction(Opcode.POP), Instruction(Opcode.RET)]
    )

    assert merge_blocks(graph)
    assert len(graph.blocks) == 1
    assert opcodes(graph) == [Opcode.LDARG_0, Opcode.POP, Opcode.RET]


def test_merge_blocks_keeps_leave():
    target = Instruction(Opcode.RET)
    graph = create_test_graph([Instruction(Opcode.LEAVE, target), target])
    assert not merge_blocks(graph)
    assert len(graph.blocks) == 2
