"""
Transforms the raw parser AST into a semantic AST using koi_datatypes.
"""
import re
from typing import Any, List

from koi.koi_datatypes import (
    Literal, VecExpr, DictExpr, Var, Interp, Unary, Binary, Call,
    Atom, CmdOp, CmdOperator,
    CmdStmt, LetStmt, ExprStmt, FnStmt, IfStmt, ReturnStmt,
)

_BARE_ESCAPE = re.compile(r'\\(.)', re.DOTALL)

_STRING_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0'}

# Operator leaf tags produced by the grammar's binary chains.
_CMD_OP_TAGS = ('seq_op', 'and_or_op', 'pipe_op')


class KoiTransformer:
    def _attach_loc(self, obj, node):
        line = node.get('line'); col = node.get('col')
        if line is not None and col is not None and hasattr(obj, '__dict__'):
            obj.loc = {'line': line, 'col': col, 'tag': node.get('tag'), 'text': node.get('text')}
        return obj

    def transform(self, node: object) -> object:
        # Lists: transform each item, dropping parser noise
        if isinstance(node, list):
            out = []
            for n in node:
                if isinstance(n, dict) and n.get('tag') in ('literal', 'regex'):
                    continue
                out.append(self.transform(n))
            return out

        # Primitives already in final form
        if not isinstance(node, dict):
            return node

        tag = node.get('tag')
        children = node.get('children', [])

        match tag:
            # Structural containers
            case 'program' | 'block':
                return self.transform(children)

            # Statements
            case 'cmd_stmt':
                return self._attach_loc(CmdStmt(self._one(children, node)), node)
            case 'let_stmt':
                name, expr = self._parts(children)
                return self._attach_loc(LetStmt(name['text'], self.transform(expr)), node)
            case 'expr_stmt':
                return self._attach_loc(ExprStmt(self._one(children, node)), node)
            case 'fn_stmt':
                name, params, body = self._parts(children)
                params = [p['text'] for p in params.get('children', [])]
                return self._attach_loc(FnStmt(name['text'], params, self.transform(body)), node)
            case 'if_stmt':
                parts = self._parts(children)
                cond, then_body = self.transform(parts[0]), self.transform(parts[1])
                else_body = []
                if len(parts) > 2:
                    other = self.transform(parts[2])
                    # `else if` chains nest as a single-statement else block
                    else_body = other if isinstance(other, list) else [other]
                return self._attach_loc(IfStmt(cond, then_body, else_body), node)
            case 'return_stmt':
                parts = self._parts(children)
                expr = self.transform(parts[0]) if parts else None
                return self._attach_loc(ReturnStmt(expr), node)

            # Commands
            case 'cmd_atom':
                segments = [self._segment(s) for s in self._parts(children)]
                return self._attach_loc(Atom(segments), node)

            # Binary chains (commands and expressions share the shape)
            case 'binary_op':
                op_node = node['op']
                lhs = self.transform(node['left'])
                rhs = self.transform(node['right'])
                if op_node.get('tag') in _CMD_OP_TAGS:
                    return self._attach_loc(CmdOp(lhs, CmdOperator(op_node['text']), rhs), node)
                return self._attach_loc(Binary(op_node['text'], lhs, rhs), node)

            # Expressions
            case 'negation':
                op, operand = self._parts(children)
                return self._attach_loc(Unary(op['text'], self.transform(operand)), node)
            case 'call':
                parts = self._parts(children)
                expr = self.transform(parts[0])
                # f(a)(b) applies left to right
                for arg_list in parts[1:]:
                    expr = self._attach_loc(Call(expr, self.transform(arg_list.get('children', []))), arg_list)
                return expr
            case 'vector':
                return self._attach_loc(VecExpr(self.transform(children)), node)
            case 'dict':
                entries = []
                for entry in self._parts(children):
                    key, value = self._parts(entry.get('children', []))
                    entries.append((self._key_text(key), self.transform(value)))
                return self._attach_loc(DictExpr(entries), node)
            case 'variable':
                return self._attach_loc(Var(node['text']), node)
            case 'dollar_var':
                return self._attach_loc(Var(node['text'][1:]), node)
            case 'interpolation':
                return self._one(children, node)
            case 'string':
                parts = self._string_parts(children)
                if all(isinstance(p, Literal) for p in parts):
                    return self._attach_loc(Literal("".join(p.value for p in parts)), node)
                return self._attach_loc(Interp(parts), node)

            # Atomics
            case 'number':
                return self._attach_loc(Literal(float(node['value'])), node)
            case 'boolean':
                return self._attach_loc(Literal(node['value']), node)
            case 'nil':
                return self._attach_loc(Literal(None), node)
            case 'raw_string':
                return self._attach_loc(Literal(node['text'][1:-1]), node)
            case 'bare_word':
                return self._attach_loc(Literal(_BARE_ESCAPE.sub(r'\1', node['text'])), node)
            case 'string_text':
                return Literal(node['text'])
            case 'string_escape':
                ch = node['text'][1:]
                return Literal(_STRING_ESCAPES.get(ch, ch))

            case _:
                raise ValueError(f"Unknown AST node tag: {tag}")

    # --- helpers ---

    def _parts(self, children) -> List[Any]:
        """Children without the anonymous punctuation nodes koine keeps."""
        if isinstance(children, dict):
            children = [children]
        return [c for c in children or [] if not (isinstance(c, dict) and c.get('tag') in ('literal', 'regex'))]

    def _one(self, children, node):
        parts = self._parts(children)
        if len(parts) != 1:
            raise ValueError(f"Expected exactly one child in '{node.get('tag')}', got {len(parts)}")
        return self.transform(parts[0])

    def _segment(self, node) -> list:
        """One argv token: a string's pieces are spliced in so they join as text."""
        exprs = []
        for part in self._parts(node.get('children', [])):
            if part.get('tag') == 'string':
                exprs.extend(self._string_parts(part.get('children', [])))
            else:
                exprs.append(self.transform(part))
        return exprs

    def _string_parts(self, children) -> list:
        parts = []
        for child in self._parts(children):
            item = self.transform(child)
            # Merge runs of plain text so "a\tb" stays one literal.
            if isinstance(item, Literal) and parts and isinstance(parts[-1], Literal):
                parts[-1] = Literal(parts[-1].value + item.value)
            else:
                parts.append(item)
        return parts

    def _key_text(self, key) -> str:
        if key.get('tag') == 'raw_string':
            return key['text'][1:-1]
        return key['text']
