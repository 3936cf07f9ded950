from deobfuscator.analysis.block_builder import build_block_graph
from deobfuscator.core.instruction import Instruction, update_offsets
from deobfuscator.core.method import (
    ExceptionHandler,
    HandlerType,
    MethodBody,
    MethodDef,
    MethodRef,
)
from deobfuscator.core.opcodes import Opcode
from deobfuscator.transforms.call_inliner import CallInliner

INT32 = "System.Int32"


def create_test_method(name, instructions, return_type=INT32, parameters=(), is_static=True):
    update_offsets(instructions)
    return MethodDef(
        name,
        "Obfuscated",
        return_type=return_type,
        parameters=parameters,
        is_static=is_static,
        body=MethodBody(instructions=instructions),
    )


def create_test_graph(instructions, method=None):
    update_offsets(instructions)
    return build_block_graph(instructions, method=method)


def opcodes(graph):
    return [instr.opcode for instr in graph.all_instructions()]


def test_constant_callee_without_arguments():
    callee = create_test_method(
        "Answer", [Instruction(Opcode.LDC_I4_S, 42), Instruction(Opcode.RET)]
    )
    site = Instruction(Opcode.CALL, callee)
    graph = create_test_graph([site, Instruction(Opcode.STLOC_0), Instruction(Opcode.RET)])

    assert CallInliner().apply(graph)
    assert site.opcode == Opcode.LDC_I4_S
    assert site.operand == 42


def test_constant_callee_discards_arguments():
    """Test that arguments of a constant callee are popped before the load."""
    callee = create_test_method(
        "Answer",
        [Instruction(Opcode.LDC_I4_S, 42), Instruction(Opcode.RET)],
        parameters=[INT32],
    )
    graph = create_test_graph(
        [
            Instruction(Opcode.LDC_I4_3),
            Instruction(Opcode.CALL, callee),
            Instruction(Opcode.STLOC_0),
            Instruction(Opcode.RET),
        ]
    )

    assert CallInliner().apply(graph)
    assert opcodes(graph) == [
        Opcode.LDC_I4_3,
        Opcode.POP,
        Opcode.LDC_I4_S,
        Opcode.STLOC_0,
        Opcode.RET,
    ]
    assert graph.entry.instructions[2].operand == 42


def test_string_constant_is_inlined():
    callee = create_test_method(
        "Secret", [Instruction(Opcode.LDSTR, "hello"), Instruction(Opcode.RET)], return_type="System.String"
    )
    site = Instruction(Opcode.CALL, callee)
    graph = create_test_graph([site, Instruction(Opcode.POP), Instruction(Opcode.RET)])

    assert CallInliner().apply(graph)
    assert (site.opcode, site.operand) == (Opcode.LDSTR, "hello")


def test_forwarder_is_replaced_by_inner_call():
    target = MethodRef("WriteLine", "System.Console", parameters=[INT32])
    wrapper = create_test_method(
        "Forward",
        [
            Instruction(Opcode.NOP),
            Instruction(Opcode.LDARG_0),
            Instruction(Opcode.CALL, target),
            Instruction(Opcode.RET),
        ],
        return_type="System.Void",
        parameters=[INT32],
    )
    site = Instruction(Opcode.CALL, wrapper)
    graph = create_test_graph([Instruction(Opcode.LDC_I4_1), site, Instruction(Opcode.RET)])

    assert CallInliner().apply(graph)
    assert site.opcode == Opcode.CALL
    assert site.operand is target


def test_operation_is_replaced_by_opcode():
    wrapper = create_test_method(
        "Add",
        [
            Instruction(Opcode.LDARG_0),
            Instruction(Opcode.LDARG_1),
            Instruction(Opcode.ADD),
            Instruction(Opcode.RET),
        ],
        parameters=[INT32, INT32],
    )
    site = Instruction(Opcode.CALL, wrapper)
    graph = create_test_graph(
        [
            Instruction(Opcode.LDC_I4_2),
            Instruction(Opcode.LDC_I4_3),
            site,
            Instruction(Opcode.STLOC_0),
            Instruction(Opcode.RET),
        ]
    )

    assert CallInliner().apply(graph)
    assert site.opcode == Opcode.ADD
    assert site.operand is None


def test_swapped_arguments_are_not_inlined():
    wrapper = create_test_method(
        "Sub",
        [
            Instruction(Opcode.LDARG_1),
            Instruction(Opcode.LDARG_0),
            Instruction(Opcode.SUB),
            Instruction(Opcode.RET),
        ],
        parameters=[INT32, INT32],
    )
    graph = create_test_graph(
        [
            Instruction(Opcode.LDC_I4_2),
            Instruction(Opcode.LDC_I4_3),
            Instruction(Opcode.CALL, wrapper),
            Instruction(Opcode.POP),
            Instruction(Opcode.RET),
        ]
    )
    assert not CallInliner().apply(graph)


def test_instance_callee_needs_opt_in():
    callee = create_test_method(
        "IsReady",
        [Instruction(Opcode.LDC_I4_1), Instruction(Opcode.RET)],
        return_type="System.Boolean",
        is_static=False,
    )

    def create_caller():
        return create_test_graph(
            [
                Instruction(Opcode.LDARG_0),
                Instruction(Opcode.CALL, callee),
                Instruction(Opcode.POP),
                Instruction(Opcode.RET),
            ]
        )

    assert not CallInliner().apply(create_caller())

    graph = create_caller()
    assert CallInliner(inline_instance_methods=True).apply(graph)
    assert opcodes(graph) == [Opcode.LDARG_0, Opcode.POP, Opcode.LDC_I4_1, Opcode.POP, Opcode.RET]


def test_unresolved_and_protected_callees_are_skipped():
    body = [
        Instruction(Opcode.LDC_I4_0),
        Instruction(Opcode.RET),
        Instruction(Opcode.ENDFINALLY),
    ]
    protected = create_test_method("Guarded", body)
    protected.body.exception_handlers.append(
        ExceptionHandler(HandlerType.FINALLY, body[0], body[2], body[2], None)
    )
    graph = create_test_graph(
        [
            Instruction(Opcode.CALL, MethodRef("Now", "System.DateTime", return_type=INT32)),
            Instruction(Opcode.CALL, protected),
            Instruction(Opcode.ADD),
            Instruction(Opcode.POP),
            Instruction(Opcode.RET),
        ]
    )
    assert not CallInliner().apply(graph)


def test_recursive_call_is_skipped():
    method = create_test_method("Self", [Instruction(Opcode.LDC_I4_7), Instruction(Opcode.RET)])
    graph = create_test_graph(
        [Instruction(Opcode.CALL, method), Instruction(Opcode.RET)], method=method
    )
    assert not CallInliner().apply(graph)


def test_forwarder_cycle_stops():
    """Test that A -> B -> A forwarding is inlined at most once per callee."""
    a = create_test_method("A", [])
    b = create_test_method("B", [])
    a.body.instructions[:] = [Instruction(Opcode.CALL, b), Instruction(Opcode.RET)]
    b.body.instructions[:] = [Instruction(Opcode.CALL, a), Instruction(Opcode.RET)]
    site = Instruction(Opcode.CALL, a)
    graph = create_test_graph([site, Instruction(Opcode.POP), Instruction(Opcode.RET)])

    inliner = CallInliner()
    inliner.initialize(graph)
    assert inliner.apply(graph)
    assert site.operand is b
    assert inliner.apply(graph)
    assert site.operand is a
    assert not inliner.apply(graph)
