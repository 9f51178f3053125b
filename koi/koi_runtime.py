import os
import re
import sys
import inspect
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Literal, Dict

import yaml
from koine import Parser

from koi.koi_datatypes import (
    Scope, NativeFunction, UserFunction,
    SpawnFailure, EvaluationFault, EngineInvariantViolation,
)
from koi.koi_interpreter import Interpreter, ErrorPolicy
from koi.koi_printer import Printer
from koi.koi_transformer import KoiTransformer


# ===================================================================
# 1. Native library
# ===================================================================

class StdLib:
    """Contains Python implementations for all Koi built-ins.

    Every method named `_name` is bound into the root scope as the native
    function `name`. Natives receive already-evaluated arguments.
    """
    def __init__(self, runner: 'ScriptRunner'):
        self.runner = runner
        self.interpreter = runner.interpreter
        self.printer = Printer()

    def _args(self):
        return list(self.interpreter.script_args)

    def _env(self, name):
        return os.environ.get(self.printer.to_str(name))

    def _len(self, collection):
        if isinstance(collection, (str, list, dict)):
            return float(len(collection))
        raise EvaluationFault("len", f"len() expects a string, vec or dict, got {self.printer.pformat(collection)}")

    def _str(self, value):
        return self.printer.to_str(value)

    def _print(self, *values):
        # Written straight to stdout so it interleaves with child output in order.
        sys.stdout.write(" ".join(self.printer.to_str(v) for v in values) + "\n")
        sys.stdout.flush()
        return None

    async def _import(self, target):
        """Runs another Koi file into the global scope. Each file runs at most once per runner."""
        if not isinstance(target, str):
            raise EvaluationFault("import", f"import() expects a path string, got {self.printer.pformat(target)}")
        root = self.interpreter.import_root or Path.cwd()
        path = (root / target).resolve()
        if path in self.runner.imported:
            return None
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise EvaluationFault("import", f"cannot read {target}: {e.strerror or e}") from e
        self.runner.imported.add(path)

        program, error = self.runner.compile(source)
        if error is not None:
            raise EvaluationFault("import", f"{target}: {error}")
        await self.interpreter.run(program)
        return None


# ===================================================================
# 2. Script Execution
# ===================================================================

Token = Dict[str, Any]

_PARSE_POS = re.compile(r'L(\d+):C(\d+)')


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")

        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses, transforms, and executes Koi code."""

    _parser: Optional[Parser] = None
    _transformer: Optional[KoiTransformer] = None

    def __init__(self, error_policy: ErrorPolicy = ErrorPolicy.HALT):
        if ScriptRunner._parser is None:
            grammar_path = Path(__file__).parent / "koi_grammar.yaml"
            with grammar_path.open(encoding="utf-8") as f:
                grammar_def = yaml.safe_load(f)
            ScriptRunner._parser = Parser(grammar_def, base_path=grammar_path.parent)

        if ScriptRunner._transformer is None:
            ScriptRunner._transformer = KoiTransformer()

        self.parser = ScriptRunner._parser
        self.transformer = ScriptRunner._transformer

        self.interpreter = Interpreter(error_policy=error_policy)
        self.root_scope: Scope = self.interpreter.root_scope
        self.imported: set = set()
        self._current_script_source = ""

        stdlib = StdLib(self)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                koi_name = name[1:]
                self.root_scope[koi_name] = NativeFunction(koi_name, member)

    # --- configuration ---

    @property
    def source_dir(self) -> Optional[str]:
        root = self.interpreter.import_root
        return str(root) if root is not None else None

    @source_dir.setter
    def source_dir(self, path):
        self.interpreter.set_import_root(path)

    def set_import_root(self, path):
        self.interpreter.set_import_root(path)

    def set_args(self, args: List[str]):
        self.interpreter.set_args(args)

    # --- error formatting ---

    def _format_parse_error(self, parse_out, source: str) -> tuple[str, Optional[Token]]:
        base = (parse_out or {}).get('message') or (parse_out or {}).get('error_message') or str(parse_out)
        m = _PARSE_POS.search(base)
        if m:
            line, col = int(m.group(1)), int(m.group(2))
            token = {'line': line, 'col': col}
            return f"ParseError: {base}\n{self._source_context(source, line, col)}", token
        return f"ParseError: {base}", None

    def _format_runtime_error(self, e, source: str, node) -> tuple[str, Optional[dict]]:
        match e:
            case SpawnFailure():
                msg = f"SpawnFailure: couldn't run {e.program!r}: {e.cause}"
            case EvaluationFault():
                msg = f"EvaluationFault[{e.kind}]: {e}"
            case _:
                msg = f"InternalError: {str(e)}"

        token = None
        loc = getattr(e, 'loc', None) or getattr(node, 'loc', None)
        if loc and isinstance(loc, dict):
            line = loc.get('line'); col = loc.get('col')
            token = {'line': line, 'col': col, 'tag': loc.get('tag'), 'text': loc.get('text')}
            if line is not None and col is not None:
                msg = f"{msg}\n(line {line}, col {col})"
                context = self._source_context(source, line, col)
                if context:
                    msg = f"{msg}\n{context}"

        st = self._format_stacktrace()
        if st:
            msg += "\n" + st

        return msg, token

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            content = lines[i - 1]
            out.append(f"{prefix} {ln} | {content}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self) -> str:
        stack = self.interpreter.call_stack
        if not stack:
            return ""
        pf = Printer().pformat
        frames = []
        for frame in stack:
            name = frame.get('name') or '<call>'
            args_s = " ".join(pf(a) for a in frame.get('args') or [])
            frames.append(f"({name} {args_s})" if args_s else f"({name})")
        return "Koi stacktrace: " + " ".join(frames)

    # --- execution ---

    def compile(self, source_code: str):
        """Parses and transforms source. Returns (program, None) or (None, error message)."""
        parse_out = self.parser.parse(source_code)
        if parse_out.get('status') != 'success':
            msg, _ = self._format_parse_error(parse_out, source_code)
            return None, msg
        return self.transformer.transform(parse_out.get('ast')), None

    def _error(self, msg: str, token: Optional[Token] = None) -> ExecutionResult:
        self.interpreter.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_token=token,
            side_effects=self.interpreter.side_effects
        )

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        self.interpreter.side_effects.clear()
        self.interpreter.call_stack.clear()
        self._current_script_source = source_code

        # 1. Parse
        parse_out = self.parser.parse(source_code)
        if parse_out.get('status') != 'success':
            msg, token = self._format_parse_error(parse_out, source_code)
            return self._error(msg, token)

        # 2. Transform
        try:
            program = self.transformer.transform(parse_out.get('ast'))
        except (ValueError, KeyError, TypeError) as e:
            return self._error(f"InternalError: transform failed: {e}")

        # 3. Execute
        try:
            status = await self.interpreter.run(program)
        except EngineInvariantViolation:
            raise
        except Exception as e:
            err_msg, err_token = self._format_runtime_error(e, source_code, self.interpreter.current_node)
            return self._error(err_msg, err_token)

        return ExecutionResult(
            status='success',
            value=status,
            side_effects=self.interpreter.side_effects
        )

    async def call_function(self, name: str, args: Optional[List[Any]] = None) -> ExecutionResult:
        """Calls a function defined by a previously handled script."""
        self.interpreter.side_effects.clear()
        self.interpreter.call_stack.clear()
        func = self.root_scope.get(name)
        if not isinstance(func, (UserFunction, NativeFunction)):
            return self._error(f"EvaluationFault[call]: no function named {name!r}")
        try:
            value = await self.interpreter.call_function(func, list(args or []))
        except EngineInvariantViolation:
            raise
        except Exception as e:
            err_msg, err_token = self._format_runtime_error(e, self._current_script_source, self.interpreter.current_node)
            return self._error(err_msg, err_token)
        return ExecutionResult(status='success', value=value, side_effects=self.interpreter.side_effects)
