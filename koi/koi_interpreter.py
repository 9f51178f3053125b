"""
The Koi interpreter: expression evaluation, lowering of command ASTs into
process trees, and sequential execution of statements.
"""
import copy
import inspect
import math
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from koi.koi_datatypes import (
    Scope, UserFunction, NativeFunction,
    Expr, Literal, VecExpr, DictExpr, Var, Interp, Unary, Binary, Call,
    Cmd, Atom, CmdOp, CmdOperator,
    Stmt, CmdStmt, LetStmt, ExprStmt, FnStmt, IfStmt, ReturnStmt, Program,
    SpawnFailure, EvaluationFault,
)
from koi.koi_printer import Printer
from koi.koi_process import Process, Leaf, PipeJoin, CondJoin, dbg
from koi.koi_streams import Stream


class ErrorPolicy(Enum):
    """What the statement executor does when a statement fails."""
    HALT = "halt"
    CONTINUE = "continue"


class Return:
    """Carries a `return` value out of nested blocks to the enclosing call."""
    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self) -> str:
        return f"Return({self.value!r})"


def is_num(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def is_truthy(v) -> bool:
    return not (v is None or v is False)


def values_equal(a, b) -> bool:
    """Structural equality over Koi values; a Num never equals a Bool."""
    if is_num(a) and is_num(b):
        return float(a) == float(b)
    if type(a) is not type(b):
        return False
    if isinstance(a, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    return a == b


def _arith(op: str, a: float, b: float) -> float:
    # IEEE-754 results instead of Python's ZeroDivisionError/OverflowError.
    match op:
        case '+': return a + b
        case '-': return a - b
        case '*': return a * b
        case '/':
            if b == 0:
                if a == 0 or math.isnan(a):
                    return math.nan
                return math.copysign(math.inf, a) * math.copysign(1.0, b)
            return a / b
        case '%':
            if b == 0:
                return math.nan
            return math.fmod(a, b)
        case '^':
            try:
                return math.pow(a, b)
            except OverflowError:
                return math.inf
            except ValueError:
                return math.inf if a == 0 else math.nan
    raise EvaluationFault(op, f"unknown operator {op!r}")


class Interpreter:
    """Runs Koi programs.

    Statements run strictly one after another. A command statement is lowered
    into a Process tree with stdin = /dev/null and stdout/stderr inherited,
    spawned, and waited to completion before the next statement starts.
    """

    def __init__(self, error_policy: ErrorPolicy = ErrorPolicy.HALT):
        self.root_scope = Scope()
        self.printer = Printer()
        self.error_policy = error_policy
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_node = None
        self.last_status: Optional[int] = None
        self.script_args: List[str] = []
        self.import_root: Optional[Path] = None
        # Called with each diagnostic as it is emitted on the `stderr` topic.
        self.on_diagnostic: Optional[Callable[[str], None]] = None

    # --- configuration hooks ---

    def set_args(self, args: List[str]):
        self.script_args = list(args)

    def set_import_root(self, path):
        self.import_root = Path(path)

    def emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})
        if topic == 'stderr' and self.on_diagnostic is not None:
            self.on_diagnostic(message)

    # =================================================================
    # Statements
    # =================================================================

    async def run(self, prog: Program) -> Optional[int]:
        """Executes a program. Returns the exit status of the last command run."""
        for stmt in prog:
            try:
                result = await self.exec_stmt(stmt, self.root_scope)
            except (SpawnFailure, EvaluationFault) as e:
                if self.error_policy is ErrorPolicy.HALT:
                    raise
                self.emit('stderr', self.describe_error(e))
                self.call_stack.clear()
                continue
            if isinstance(result, Return):
                break
        return self.last_status

    async def exec_block(self, stmts: List[Stmt], scope: Scope) -> Optional[Return]:
        for stmt in stmts:
            result = await self.exec_stmt(stmt, scope)
            if isinstance(result, Return):
                return result
        return None

    async def exec_stmt(self, stmt: Stmt, scope: Scope) -> Optional[Return]:
        self.current_node = stmt
        match stmt:
            case CmdStmt(cmd=cmd):
                self.last_status = await self.run_command(cmd, scope)
            case LetStmt(name=name, expr=expr):
                value = await self.eval(expr, scope)
                scope[name] = value
            case ExprStmt(expr=expr):
                await self.eval(expr, scope)
            case FnStmt(name=name, params=params, body=body):
                scope[name] = UserFunction(name, params, body)
            case IfStmt(cond=cond, then_body=then_body, else_body=else_body):
                branch = then_body if is_truthy(await self.eval(cond, scope)) else else_body
                return await self.exec_block(branch, scope)
            case ReturnStmt(expr=expr):
                return Return(await self.eval(expr, scope) if expr is not None else None)
            case _:
                raise EvaluationFault("stmt", f"unknown statement {type(stmt).__name__}", getattr(stmt, 'loc', None))
        return None

    async def run_command(self, cmd: Cmd, scope: Scope) -> int:
        process = await self.run_cmd(cmd, scope, Stream.null(), Stream.inherit(), Stream.inherit())
        # Spawn failures are reported against the command, not its last argument.
        self.current_node = cmd
        try:
            await process.spawn()
            status = await process.wait()
        except SpawnFailure as e:
            if e.loc is None:
                e.loc = getattr(cmd, 'loc', None)
            raise
        dbg("statement status", status)
        return status

    # =================================================================
    # Process builder
    # =================================================================

    async def run_cmd(self, cmd: Cmd, scope: Scope, stdin: Stream, stdout: Stream, stderr: Stream) -> Process:
        """Lowers a command AST into an unspawned Process tree.

        The three streams are owned by the returned plan; if building fails
        they are released before the error propagates.
        """
        match cmd:
            case Atom(segments=segments):
                try:
                    argv = await self.eval_argv(segments, scope)
                    if not argv:
                        raise EvaluationFault("command", "empty command", getattr(cmd, 'loc', None))
                except BaseException:
                    self._release(stdin, stdout, stderr)
                    raise
                return Leaf(argv[0], argv[1:], stdin, stdout, stderr)

            case CmdOp(op=CmdOperator.PIPE):
                try:
                    reader, writer = Stream.pipe()
                except OSError as e:
                    self._release(stdin, stdout, stderr)
                    raise EvaluationFault("command", f"cannot create pipe: {e.strerror or e}", getattr(cmd, 'loc', None)) from e
                try:
                    # Only stdout goes down the pipe; the producer's stderr is discarded.
                    lhs = await self.run_cmd(cmd.lhs, scope, stdin, writer, Stream.null())
                except BaseException:
                    self._release(reader, stdout, stderr)
                    raise
                try:
                    rhs = await self.run_cmd(cmd.rhs, scope, reader, stdout, stderr)
                except BaseException:
                    lhs.discard()
                    raise
                return PipeJoin(lhs, rhs)

            case CmdOp(op=op):
                copies = []
                try:
                    for s in (stdin, stdout, stderr):
                        copies.append(s.duplicate())
                except OSError as e:
                    self._release(*copies, stdin, stdout, stderr)
                    raise EvaluationFault("command", f"cannot duplicate stream: {e.strerror or e}", getattr(cmd, 'loc', None)) from e
                try:
                    lhs = await self.run_cmd(cmd.lhs, scope, *copies)
                except BaseException:
                    self._release(stdin, stdout, stderr)
                    raise
                try:
                    rhs = await self.run_cmd(cmd.rhs, scope, stdin, stdout, stderr)
                except BaseException:
                    lhs.discard()
                    raise
                return CondJoin(op, lhs, rhs)

        self._release(stdin, stdout, stderr)
        raise EvaluationFault("command", f"unknown command node {type(cmd).__name__}", getattr(cmd, 'loc', None))

    @staticmethod
    def _release(*streams: Stream):
        for s in streams:
            s.close()

    async def eval_argv(self, segments: List[List[Expr]], scope: Scope) -> List[str]:
        """One argv token per segment, evaluated left to right."""
        argv = []
        for segment in segments:
            parts = []
            for expr in segment:
                parts.append(self.printer.to_str(await self.eval(expr, scope)))
            argv.append("".join(parts))
        return argv

    # =================================================================
    # Expressions
    # =================================================================

    async def eval(self, expr: Expr, scope: Scope) -> Any:
        self.current_node = expr
        match expr:
            case Literal(value=value):
                return value
            case VecExpr(items=items):
                out = []
                for item in items:
                    out.append(await self.eval(item, scope))
                return out
            case DictExpr(entries=entries):
                out = {}
                for key, item in entries:
                    out[key] = await self.eval(item, scope)
                return out
            case Var(name=name):
                return copy.deepcopy(scope.get(name))
            case Interp(parts=parts):
                out = []
                for part in parts:
                    out.append(self.printer.to_str(await self.eval(part, scope)))
                return "".join(out)
            case Unary(op=op, operand=operand):
                return self._eval_unary(op, await self.eval(operand, scope), expr)
            case Binary(op=op, lhs=lhs, rhs=rhs):
                a = await self.eval(lhs, scope)
                b = await self.eval(rhs, scope)
                return self._eval_binary(op, a, b, expr)
            case Call(callee=callee, args=args):
                func = await self.eval(callee, scope)
                values = []
                for arg in args:
                    values.append(await self.eval(arg, scope))
                return await self.call_function(func, values, expr)
        raise EvaluationFault("expr", f"cannot evaluate {type(expr).__name__}", getattr(expr, 'loc', None))

    def _eval_unary(self, op: str, v: Any, node: Expr) -> Any:
        if op == '!':
            return not is_truthy(v)
        if not is_num(v):
            raise EvaluationFault(f"unary {op}", f"bad operand for unary {op}, expected number, got {self.printer.pformat(v)}", node.loc)
        return -float(v) if op == '-' else float(v)

    def _eval_binary(self, op: str, a: Any, b: Any, node: Expr) -> Any:
        match op:
            case '==':
                return values_equal(a, b)
            case '!=':
                return not values_equal(a, b)
            case '<' | '<=' | '>' | '>=':
                if (is_num(a) and is_num(b)) or (isinstance(a, str) and isinstance(b, str)):
                    match op:
                        case '<': return a < b
                        case '<=': return a <= b
                        case '>': return a > b
                        case '>=': return a >= b
            case '+' if isinstance(a, str) and isinstance(b, str):
                return a + b
            case '+' if isinstance(a, list) and isinstance(b, list):
                return a + b
            case '+' | '-' | '*' | '/' | '%' | '^':
                if is_num(a) and is_num(b):
                    return _arith(op, float(a), float(b))
        p = self.printer.pformat
        raise EvaluationFault(op, f"bad operands for {op}: {p(a)} and {p(b)}", node.loc)

    async def call_function(self, func: Any, args: List[Any], node: Optional[Expr] = None) -> Any:
        loc = getattr(node, 'loc', None)
        if isinstance(func, NativeFunction):
            self._push_frame(func.name, args, loc)
            try:
                result = func.body(*args)
            except TypeError as e:
                raise EvaluationFault("call", f"invalid arguments to {func.name}: {e}", loc) from e
            if inspect.isawaitable(result):
                result = await result
            self._pop_frame()
            return result
        if isinstance(func, UserFunction):
            if len(args) > len(func.params):
                raise EvaluationFault(
                    "call", f"{func.name} takes {len(func.params)} arguments, got {len(args)}", loc)
            frame = Scope(parent=self.root_scope)
            for i, param in enumerate(func.params):
                frame[param] = args[i] if i < len(args) else None
            self._push_frame(func.name, args, loc)
            result = await self.exec_block(func.body, frame)
            self._pop_frame()
            return result.value if isinstance(result, Return) else None
        raise EvaluationFault("call", f"{self.printer.pformat(func)} is not callable", loc)

    def _push_frame(self, name, args, loc):
        self.call_stack.append({'name': name, 'args': args, 'call_site': loc})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    # =================================================================
    # Diagnostics
    # =================================================================

    def describe_error(self, e: BaseException) -> str:
        """A one-line, user-facing description of a statement failure."""
        match e:
            case SpawnFailure():
                msg = f"SpawnFailure: couldn't run {e.program!r}: {e.cause}"
            case EvaluationFault():
                msg = f"EvaluationFault[{e.kind}]: {e}"
            case _:
                msg = f"InternalError: {e}"
        loc = getattr(e, 'loc', None)
        if loc and loc.get('line') is not None:
            msg += f" (line {loc['line']}, col {loc.get('col')})"
        return msg
