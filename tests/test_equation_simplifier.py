import pytest
from hypothesis import given
from hypothesis import strategies as st

from deobfuscator.analysis.equation_simplifier import (
    EQUATION_TRUTH_TABLE,
    PredicateKind,
    classify_predicate,
    has_switch,
    simplify_equations,
)
from deobfuscator.core.instruction import Instruction, update_offsets
from deobfuscator.core.method import BOOLEAN_TYPE, MethodBody, MethodDef, MethodRef
from deobfuscator.core.opcodes import Opcode


def create_test_method(instructions, name="Main", return_type="System.Void", parameters=()):
    """Helper to create a static method owning the given instructions."""
    update_offsets(instructions)
    return MethodDef(
        name,
        "Program",
        return_type=return_type,
        parameters=parameters,
        body=MethodBody(list(instructions)),
    )


def create_predicate(value, return_type=BOOLEAN_TYPE):
    """Helper to create a stub method whose second-to-last instruction loads ``value``."""
    body = [
        Instruction(Opcode.LDSFLD, "Program::flag"),
        Instruction(Opcode.POP),
        Instruction.create_ldc_i4(value),
        Instruction(Opcode.RET),
    ]
    return create_test_method(body, name="IsFeatureEnabled", return_type=return_type)


def create_equation_site(callee, branch_opcode):
    """
    Helper to build ``ldc.i4.7; call callee; <branch> L; pop; ldstr A; L: ret``.

    Returns:
        Tuple (method, call, branch, pop, target)
    """
    target = Instruction(Opcode.RET)
    call = Instruction(Opcode.CALL, callee)
    branch = Instruction(branch_opcode, target)
    pop = Instruction(Opcode.POP)
    instructions = [
        Instruction(Opcode.LDC_I4_7),
        call,
        branch,
        pop,
        Instruction(Opcode.LDSTR, "A"),
        Instruction(Opcode.POP),
        target,
    ]
    return create_test_method(instructions), call, branch, pop, target


@pytest.mark.parametrize(
    "branch_opcode, value, return_type, expected",
    [
        (Opcode.BRTRUE, 0, BOOLEAN_TYPE, Opcode.NOP),
        (Opcode.BRTRUE, 1, BOOLEAN_TYPE, Opcode.BR),
        (Opcode.BRFALSE, 0, BOOLEAN_TYPE, Opcode.BR),
        (Opcode.BRFALSE, 1, BOOLEAN_TYPE, Opcode.NOP),
        (Opcode.BRTRUE, 0, "System.Int32", Opcode.NOP),
        (Opcode.BRFALSE, 0, "System.Int32", Opcode.BR),
        (Opcode.BRTRUE_S, 5, BOOLEAN_TYPE, Opcode.BR),
        (Opcode.BRFALSE_S, -1, BOOLEAN_TYPE, Opcode.NOP),
    ],
)
def test_truth_table(branch_opcode, value, return_type, expected):
    """Test every row of the call/branch rewrite table."""
    method, call, branch, pop, target = create_equation_site(
        create_predicate(value, return_type), branch_opcode
    )

    assert simplify_equations(method) == 1

    assert call.opcode == Opcode.NOP
    assert call.operand is None
    assert branch.opcode == expected
    if expected == Opcode.BR:
        assert branch.operand is target
    else:
        assert branch.operand is None
    assert pop.opcode == Opcode.POP


@given(
    is_brtrue=st.booleans(),
    kind=st.sampled_from(list(PredicateKind)),
)
def test_truth_table_is_total_and_flips_with_branch_sense(is_brtrue, kind):
    """Test that brtrue and brfalse always get opposite rewrites."""
    rewritten = EQUATION_TRUTH_TABLE[(is_brtrue, kind)]
    opposite = EQUATION_TRUTH_TABLE[(not is_brtrue, kind)]
    assert {rewritten, opposite} == {Opcode.NOP, Opcode.BR}


def test_classify_predicate():
    """Test the literal-based classification of stub methods."""
    assert classify_predicate(create_predicate(0)) == PredicateKind.ALWAYS_FALSE
    assert classify_predicate(create_predicate(1)) == PredicateKind.ALWAYS_TRUE
    assert classify_predicate(create_predicate(200)) == PredicateKind.ALWAYS_TRUE
    assert classify_predicate(create_predicate(0, "System.String")) == PredicateKind.UNKNOWN

    computed = create_test_method(
        [Instruction(Opcode.LDARG_0), Instruction(Opcode.RET)],
        return_type=BOOLEAN_TYPE,
        parameters=[BOOLEAN_TYPE],
    )
    assert classify_predicate(computed) == PredicateKind.ALWAYS_TRUE

    bare = create_test_method([Instruction(Opcode.RET)], return_type=BOOLEAN_TYPE)
    assert classify_predicate(bare) is None


def test_site_with_computed_predicate_counts_as_true():
    """Test that a callee returning a field value is treated as always true."""
    callee = create_test_method(
        [Instruction(Opcode.LDSFLD, "Program::flag"), Instruction(Opcode.RET)],
        name="IsEnabled",
        return_type=BOOLEAN_TYPE,
    )
    method, call, branch, pop, target = create_equation_site(callee, Opcode.BRTRUE)

    assert simplify_equations(method) == 1
    assert call.opcode == Opcode.NOP
    assert branch.opcode == Opcode.BR
    assert branch.operand is target
    assert pop.opcode == Opcode.POP


def test_unresolved_call_is_skipped():
    """Test that calls to external methods are never rewritten."""
    external = MethodRef("IsEnabled", "Library", return_type=BOOLEAN_TYPE)
    method, call, branch, _, _ = create_equation_site(external, Opcode.BRFALSE)

    assert simplify_equations(method) == 0
    assert call.operand is external
    assert branch.opcode == Opcode.BRFALSE


def test_sites_at_body_edges_are_skipped():
    """Test that a branch at either end of the body doesn't index out of range."""
    target = Instruction(Opcode.RET)
    method = create_test_method(
        [Instruction(Opcode.BRTRUE, target), Instruction(Opcode.POP), target]
    )
    assert simplify_equations(method) == 0

    last = Instruction(Opcode.BRFALSE, None)
    method = create_test_method(
        [Instruction(Opcode.CALL, create_predicate(0)), last]
    )
    assert simplify_equations(method) == 0
    assert last.opcode == Opcode.BRFALSE


def test_has_switch():
    """Test detection of multi-way branches."""
    case = Instruction(Opcode.RET)
    with_switch = create_test_method(
        [Instruction(Opcode.LDARG_0), Instruction(Opcode.SWITCH, [case]), case],
        parameters=["System.Int32"],
    )
    without_switch = create_test_method([Instruction(Opcode.RET)])

    assert has_switch(with_switch)
    assert not has_switch(without_switch)
    assert not has_switch(None)
    assert not has_switch(MethodDef("Abstract", "Program"))
