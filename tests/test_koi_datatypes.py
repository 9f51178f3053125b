import copy
import pytest

from koi.koi_datatypes import (
    Scope, UserFunction, NativeFunction,
    Literal, Var, Binary, Atom, CmdOp, CmdOperator, CmdStmt, LetStmt,
    SpawnFailure, EvaluationFault, EngineInvariantViolation,
)


def test_scope_lookup_walks_parent_chain():
    root = Scope()
    root['x'] = 1
    child = Scope(parent=root)
    child['y'] = 2
    assert child['x'] == 1
    assert child['y'] == 2
    assert 'x' in child
    assert 'y' not in root
    assert child.find_owner('x') is root


def test_scope_binding_writes_to_current_scope_only():
    root = Scope()
    root['x'] = 1
    child = Scope(parent=root)
    child['x'] = 2
    assert root['x'] == 1
    assert child['x'] == 2
    assert list(child.keys()) == ['x']


def test_scope_missing_key():
    s = Scope()
    with pytest.raises(KeyError):
        s['nope']
    assert s.get('nope') is None
    assert s.get('nope', 5) == 5


def test_scope_rejects_non_string_keys():
    with pytest.raises(TypeError):
        Scope()[1] = 2


def test_functions_are_shared_by_deepcopy():
    fn = UserFunction("f", ["a"], [])
    native = NativeFunction("len", len)
    copied = copy.deepcopy([fn, native])
    assert copied[0] is fn
    assert copied[1] is native


def test_function_equality():
    body = [CmdStmt(Atom([[Literal("true")]]))]
    assert UserFunction("f", ["a"], body) == UserFunction("f", ["a"], list(body))
    assert UserFunction("f", ["a"], body) != UserFunction("g", ["a"], body)
    assert NativeFunction("len", len) == NativeFunction("len", len)


def test_ast_nodes_compare_structurally():
    a = Binary("+", Literal(1.0), Var("x"))
    b = Binary("+", Literal(1.0), Var("x"))
    assert a == b
    assert a != Binary("-", Literal(1.0), Var("x"))
    assert LetStmt("x", Literal(1.0)) != CmdStmt(Atom([[Literal("x")]]))


def test_ast_repr_is_readable():
    node = CmdOp(Atom([[Literal("a")]]), CmdOperator.PIPE, Atom([[Literal("b")]]))
    assert repr(node).startswith("CmdOp(Atom(")


def test_cmd_operator_values():
    assert CmdOperator("|") is CmdOperator.PIPE
    assert CmdOperator(";") is CmdOperator.SEQ
    assert CmdOperator("&&") is CmdOperator.AND
    assert CmdOperator("||") is CmdOperator.OR


def test_error_types_carry_context():
    cause = FileNotFoundError(2, "No such file or directory")
    sf = SpawnFailure("nope", cause)
    assert sf.program == "nope"
    assert sf.cause is cause
    assert "nope" in str(sf)

    loc = {'line': 3, 'col': 5}
    ef = EvaluationFault("+", "bad operands", loc)
    assert ef.kind == "+"
    assert ef.loc == loc
    assert str(ef) == "bad operands"

    assert issubclass(EngineInvariantViolation, RuntimeError)
