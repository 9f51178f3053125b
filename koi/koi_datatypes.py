"""
Defines the core data types for the Koi language runtime.

Runtime values are plain Python objects (None, float, str, bool, list, dict)
plus the two function types defined here. This module also holds the
semantic AST produced by the transformer and the typed errors raised by the
evaluator and the process engine.
"""

from abc import ABC
from enum import Enum
from typing import List, Dict, Any, Optional, Callable, Tuple


class SpawnFailure(Exception):
    """A program could not be started (missing executable, permissions, resources)."""
    def __init__(self, program: str, cause: BaseException, loc: Optional[Dict[str, Any]] = None):
        super().__init__(f"{program}: {cause}")
        self.program = program
        self.cause = cause
        self.loc = loc


class EvaluationFault(Exception):
    """An expression could not be evaluated, e.g. an operator applied to the wrong types."""
    def __init__(self, kind: str, message: str, loc: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.loc = loc


class EngineInvariantViolation(RuntimeError):
    """A process tree was driven out of order. Indicates a builder bug, not user error."""
    pass


# =================================================================
# Functions & Scope
# =================================================================

class KoiCallable(ABC):
    """Abstract base class for all objects callable within Koi."""
    pass


class UserFunction(KoiCallable):
    """A function defined in Koi with `fn`. Not a closure: calls run against the globals."""
    def __init__(self, name: Optional[str], params: List[str], body: List['Stmt']):
        self.name = name
        self.params = list(params)
        self.body = body

    def __repr__(self) -> str:
        return f"<UserFunction name={self.name!r} params={self.params!r}>"

    def __eq__(self, other):
        if not isinstance(other, UserFunction):
            return NotImplemented
        return self.name == other.name and self.params == other.params and self.body == other.body

    def __deepcopy__(self, memo):
        # The body is immutable AST; sharing it is a value copy.
        return self


class NativeFunction(KoiCallable):
    """A host-provided function. `body` receives the evaluated arguments positionally."""
    def __init__(self, name: str, body: Callable[..., Any]):
        self.name = name
        self.body = body

    def __repr__(self) -> str:
        return f"<NativeFunction name={self.name!r}>"

    def __eq__(self, other):
        if not isinstance(other, NativeFunction):
            return NotImplemented
        return self.name == other.name and self.body == other.body

    def __deepcopy__(self, memo):
        return self


class Scope:
    """A variable scope with an optional parent.

    Lookup walks self → parent; binding always writes to this scope.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.bindings: Dict[str, Any] = {}
        self.parent = parent

    def __setitem__(self, key: str, value: Any):
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        self.bindings[key] = value

    def __getitem__(self, key: str) -> Any:
        owner = self.find_owner(key)
        if owner:
            return owner.bindings[key]
        raise KeyError(f"'{key}'")

    def __contains__(self, key: Any) -> bool:
        return isinstance(key, str) and self.find_owner(key) is not None

    def find_owner(self, key: str) -> Optional['Scope']:
        """Finds the Scope in the lookup chain that owns key."""
        if key in self.bindings:
            return self
        if self.parent is not None:
            return self.parent.find_owner(key)
        return None

    def get(self, key: str, default: Any = None) -> Any:
        owner = self.find_owner(key)
        if owner:
            return owner.bindings[key]
        return default

    def keys(self):
        """Returns a view of keys in the current scope only."""
        return self.bindings.keys()

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope bindings=[{keys}]{parent_id}>"


# =================================================================
# Semantic AST
# =================================================================

class Node:
    """Base for AST nodes. `loc` is attached by the transformer when known."""
    loc: Optional[Dict[str, Any]] = None
    _fields: Tuple[str, ...] = ()

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return all(getattr(self, f) == getattr(other, f) for f in self._fields)

    def __repr__(self) -> str:
        args = ", ".join(f"{getattr(self, f)!r}" for f in self._fields)
        return f"{type(self).__name__}({args})"


# --- Expressions ---

class Expr(Node):
    pass


class Literal(Expr):
    _fields = ("value",)
    def __init__(self, value: Any):
        self.value = value


class VecExpr(Expr):
    _fields = ("items",)
    def __init__(self, items: List[Expr]):
        self.items = list(items)


class DictExpr(Expr):
    """Dict literal. Keys are plain strings; entries keep source order."""
    _fields = ("entries",)
    def __init__(self, entries: List[Tuple[str, Expr]]):
        self.entries = list(entries)


class Var(Expr):
    _fields = ("name",)
    def __init__(self, name: str):
        self.name = name


class Interp(Expr):
    """Interpolated string: parts are evaluated and joined as text."""
    _fields = ("parts",)
    def __init__(self, parts: List[Expr]):
        self.parts = list(parts)


class Unary(Expr):
    _fields = ("op", "operand")
    def __init__(self, op: str, operand: Expr):
        self.op = op
        self.operand = operand


class Binary(Expr):
    _fields = ("op", "lhs", "rhs")
    def __init__(self, op: str, lhs: Expr, rhs: Expr):
        self.op = op
        self.lhs = lhs
        self.rhs = rhs


class Call(Expr):
    _fields = ("callee", "args")
    def __init__(self, callee: Expr, args: List[Expr]):
        self.callee = callee
        self.args = list(args)


# --- Commands ---

class CmdOperator(Enum):
    PIPE = "|"
    SEQ = ";"
    AND = "&&"
    OR = "||"


class Cmd(Node):
    pass


class Atom(Cmd):
    """One program invocation. Each segment is a list of expressions forming one argv token."""
    _fields = ("segments",)
    def __init__(self, segments: List[List[Expr]]):
        self.segments = [list(s) for s in segments]


class CmdOp(Cmd):
    _fields = ("lhs", "op", "rhs")
    def __init__(self, lhs: Cmd, op: CmdOperator, rhs: Cmd):
        self.lhs = lhs
        self.op = op
        self.rhs = rhs


# --- Statements ---

class Stmt(Node):
    pass


class CmdStmt(Stmt):
    _fields = ("cmd",)
    def __init__(self, cmd: Cmd):
        self.cmd = cmd


class LetStmt(Stmt):
    _fields = ("name", "expr")
    def __init__(self, name: str, expr: Expr):
        self.name = name
        self.expr = expr


class ExprStmt(Stmt):
    _fields = ("expr",)
    def __init__(self, expr: Expr):
        self.expr = expr


class FnStmt(Stmt):
    _fields = ("name", "params", "body")
    def __init__(self, name: str, params: List[str], body: List[Stmt]):
        self.name = name
        self.params = list(params)
        self.body = list(body)


class IfStmt(Stmt):
    _fields = ("cond", "then_body", "else_body")
    def __init__(self, cond: Expr, then_body: List[Stmt], else_body: List[Stmt]):
        self.cond = cond
        self.then_body = list(then_body)
        self.else_body = list(else_body)


class ReturnStmt(Stmt):
    _fields = ("expr",)
    def __init__(self, expr: Optional[Expr] = None):
        self.expr = expr


Program = List[Stmt]
