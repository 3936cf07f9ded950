import pytest

from deobfuscator.analysis.block_builder import build_block_graph, build_method_graph
from deobfuscator.core.basic_block import BasicBlock, BlockKind
from deobfuscator.core.instruction import Instruction, update_offsets
from deobfuscator.core.method import ExceptionHandler, HandlerType, MethodBody, MethodDef
from deobfuscator.core.opcodes import Opcode
from deobfuscator.exceptions import BlockGraphError, InvalidMethodBodyError


def create_test_graph(instructions, handlers=()):
    """Helper to build a graph from a hand-written instruction list."""
    update_offsets(instructions)
    return build_block_graph(instructions, handlers)


def test_straight_line_code_is_one_block():
    """Test that code without branches forms a single exit block."""
    graph = create_test_graph(
        [Instruction(Opcode.LDC_I4_1), Instruction(Opcode.POP), Instruction(Opcode.RET)]
    )

    assert len(graph.blocks) == 1
    assert graph.entry.kind == BlockKind.EXIT
    assert graph.entry.successors() == []


def test_conditional_branch_splits_blocks():
    """Test fall-through and target edges of a conditional branch."""
    target = Instruction(Opcode.LDC_I4_2)
    instructions = [
        Instruction(Opcode.LDARG_0),
        Instruction(Opcode.BRTRUE, target),
        Instruction(Opcode.LDC_I4_1),
        Instruction(Opcode.RET),
        target,
        Instruction(Opcode.RET),
    ]
    graph = create_test_graph(instructions)

    assert len(graph.blocks) == 3
    entry, fall, taken = graph.blocks
    assert entry.kind == BlockKind.COND_BRANCH
    assert entry.fall_through is fall
    assert entry.targets == [taken]
    assert fall.sources == [entry]
    assert taken.sources == [entry]
    assert taken.first_instruction is target


def test_unconditional_branch_has_no_fall_through():
    """Test that code after a br is only reachable through other edges."""
    target = Instruction(Opcode.RET)
    instructions = [
        Instruction(Opcode.BR, target),
        Instruction(Opcode.LDC_I4_0),
        Instruction(Opcode.POP),
        target,
    ]
    graph = create_test_graph(instructions)

    entry, skipped, end = graph.blocks
    assert entry.kind == BlockKind.BRANCH
    assert entry.fall_through is None
    assert entry.targets == [end]
    assert skipped.sources == []
    assert end.sources == [skipped, entry] or end.sources == [entry, skipped]


def test_switch_targets_keep_their_order():
    """Test that switch targets map to blocks in case order."""
    case_a = Instruction(Opcode.NOP)
    case_b = Instruction(Opcode.NOP)
    instructions = [
        Instruction(Opcode.LDARG_0),
        Instruction(Opcode.SWITCH, [case_b, case_a, case_b]),
        Instruction(Opcode.RET),
        case_a,
        Instruction(Opcode.RET),
        case_b,
        Instruction(Opcode.RET),
    ]
    graph = create_test_graph(instructions)

    entry, default, block_a, block_b = graph.blocks
    assert entry.kind == BlockKind.SWITCH
    assert entry.fall_through is default
    assert entry.targets == [block_b, block_a, block_b]
    assert entry.successors() == [block_b, block_a, default]


def test_exception_handler_boundaries_start_blocks():
    """Test that try/handler boundaries become block leaders and regions."""
    end = Instruction(Opcode.RET)
    try_start = Instruction(Opcode.NOP)
    handler_start = Instruction(Opcode.POP)
    instructions = [
        try_start,
        Instruction(Opcode.LEAVE, end),
        handler_start,
        Instruction(Opcode.LEAVE, end),
        end,
    ]
    handler = ExceptionHandler(
        handler_type=HandlerType.CATCH,
        try_start=try_start,
        try_end=handler_start,
        handler_start=handler_start,
        handler_end=end,
        catch_type="System.Exception",
    )
    graph = create_test_graph(instructions, [handler])

    assert len(graph.blocks) == 3
    region = graph.regions[0]
    assert region.try_first is region.try_last is graph.blocks[0]
    assert region.handler_first is region.handler_last is graph.blocks[1]
    assert region.catch_type == "System.Exception"
    assert graph.handler_blocks(region) == [graph.blocks[1]]


def test_branch_outside_body_is_rejected():
    """Test that a branch to a foreign instruction raises."""
    instructions = [Instruction(Opcode.BR, Instruction(Opcode.NOP)), Instruction(Opcode.RET)]
    with pytest.raises(InvalidMethodBodyError):
        create_test_graph(instructions)


def test_empty_and_duplicate_streams_are_rejected():
    """Test the stream sanity checks."""
    with pytest.raises(InvalidMethodBodyError):
        build_block_graph([])

    ret = Instruction(Opcode.RET)
    with pytest.raises(InvalidMethodBodyError):
        build_block_graph([ret, ret])


def test_method_without_body_is_rejected():
    """Test build_method_graph on a method without instructions."""
    with pytest.raises(InvalidMethodBodyError):
        build_method_graph(MethodDef("Abstract", "Program"))
    with pytest.raises(InvalidMethodBodyError):
        build_method_graph(MethodDef("Empty", "Program", body=MethodBody()))


def test_build_method_graph_keeps_method():
    """Test that the graph remembers the method it was built from."""
    method = MethodDef("Main", "Program", body=MethodBody([Instruction(Opcode.RET)]))
    graph = build_method_graph(method)
    assert graph.method is method


def test_repartition_merges_plain_fall_through():
    """Test that a neutralised branch no longer splits the block."""
    target = Instruction(Opcode.POP)
    branch = Instruction(Opcode.BR, target)
    graph = create_test_graph([Instruction(Opcode.LDC_I4_1), branch, target, Instruction(Opcode.RET)])
    assert len(graph.blocks) == 2

    branch.opcode, branch.operand = Opcode.NOP, None
    graph.entry.set_edges(graph.blocks[1], [])
    graph.repartition()

    assert len(graph.blocks) == 1
    assert [instr.opcode for instr in graph.entry.instructions] == [
        Opcode.LDC_I4_1,
        Opcode.NOP,
        Opcode.POP,
        Opcode.RET,
    ]


def test_merge_drops_trailing_branch():
    """Test merging a block into the block that jumps to it."""
    target = Instruction(Opcode.RET)
    graph = create_test_graph([Instruction(Opcode.LDC_I4_1), Instruction(Opcode.BR, target), target])
    first, second = graph.blocks

    merged = graph.merge(first, second)

    assert graph.blocks == [merged]
    assert [instr.opcode for instr in merged.instructions] == [Opcode.LDC_I4_1, Opcode.RET]
    assert merged.successors() == []


def test_merge_rejects_block_with_other_predecessors():
    """Test that merge refuses anything but a simple chain."""
    target = Instruction(Opcode.RET)
    instructions = [
        Instruction(Opcode.LDARG_0),
        Instruction(Opcode.BRTRUE, target),
        Instruction(Opcode.NOP),
        target,
    ]
    graph = create_test_graph(instructions)
    with pytest.raises(BlockGraphError):
        graph.merge(graph.blocks[1], graph.blocks[2])


def test_split_keeps_edges_on_the_tail():
    """Test that splitting a block moves its outgoing edges to the new block."""
    target = Instruction(Opcode.RET)
    instructions = [
        Instruction(Opcode.LDC_I4_1),
        Instruction(Opcode.POP),
        Instruction(Opcode.BR, target),
        target,
    ]
    graph = create_test_graph(instructions)
    head = graph.entry

    tail = graph.split(head, 1)

    assert graph.blocks.index(tail) == 1
    assert head.successors() == [tail]
    assert tail.targets == [graph.blocks[2]]
    assert graph.blocks[2].sources == [tail]


def test_remove_refuses_entry_block():
    """Test that the entry block can't be removed."""
    graph = create_test_graph([Instruction(Opcode.RET)])
    with pytest.raises(BlockGraphError):
        graph.remove([graph.entry])


def test_remove_nops_keeps_one_instruction():
    """Test that an all-nop block isn't left empty."""
    block = BasicBlock([Instruction(Opcode.NOP), Instruction(Opcode.NOP)])
    assert block.remove_nops()
    assert len(block.instructions) == 1
    assert not block.remove_nops()
