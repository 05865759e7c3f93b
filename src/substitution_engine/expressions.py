from __future__ import annotations

import ast
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<number>\d+(?:\.\d+)?)
    | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<op>&&|\|\||==|!=|[!()+\-*/])
    """,
    re.VERBOSE,
)

_BINARY_NODES: dict[str, Callable[[ast.expr, ast.expr], ast.expr]] = {
    "&&": lambda left, right: ast.BoolOp(op=ast.And(), values=[left, right]),
    "||": lambda left, right: ast.BoolOp(op=ast.Or(), values=[left, right]),
    "==": lambda left, right: ast.Compare(left=left, ops=[ast.Eq()], comparators=[right]),
    "!=": lambda left, right: ast.Compare(left=left, ops=[ast.NotEq()], comparators=[right]),
    "+": lambda left, right: ast.BinOp(left=left, op=ast.Add(), right=right),
    "-": lambda left, right: ast.BinOp(left=left, op=ast.Sub(), right=right),
    "*": lambda left, right: ast.BinOp(left=left, op=ast.Mult(), right=right),
    "/": lambda left, right: ast.BinOp(left=left, op=ast.Div(), right=right),
}

_UNARY_NODES: dict[str, Callable[[ast.expr], ast.expr]] = {
    "!": lambda operand: ast.UnaryOp(op=ast.Not(), operand=operand),
}


class ExpressionSyntaxError(ValueError):
    """Raised when a rule expression cannot be parsed under its grammar."""


class UnknownVariableError(ExpressionSyntaxError):
    """Raised when an expression references a variable outside the grammar."""


class EvaluationError(ValueError):
    """Base class for failures while evaluating rules."""


class ExpressionArithmeticError(EvaluationError, ArithmeticError):
    """Raised when an arithmetic expression has no finite result."""


@dataclass(slots=True, frozen=True)
class Grammar:
    """Variable alphabet and operator set of one expression language."""

    name: str
    variables: frozenset[str]
    binary_operators: dict[str, int]
    unary_operators: frozenset[str]
    allow_numbers: bool
    numeric: bool
    allowed_nodes: tuple[type[ast.AST], ...]


BOOLEAN_GRAMMAR = Grammar(
    name="boolean",
    variables=frozenset({"A", "B", "C"}),
    # `!` binds tightest and is handled as a unary prefix.
    binary_operators={"==": 1, "!=": 1, "||": 2, "&&": 3},
    unary_operators=frozenset({"!"}),
    allow_numbers=False,
    numeric=False,
    allowed_nodes=(
        ast.Expression,
        ast.BoolOp,
        ast.UnaryOp,
        ast.Compare,
        ast.Name,
        ast.Load,
        ast.And,
        ast.Or,
        ast.Not,
        ast.Eq,
        ast.NotEq,
    ),
)

ARITHMETIC_GRAMMAR = Grammar(
    name="arithmetic",
    variables=frozenset({"D", "E", "F"}),
    binary_operators={"+": 1, "-": 1, "*": 2, "/": 2},
    unary_operators=frozenset(),
    allow_numbers=True,
    numeric=True,
    allowed_nodes=(
        ast.Expression,
        ast.BinOp,
        ast.Name,
        ast.Load,
        ast.Constant,
        ast.Add,
        ast.Sub,
        ast.Mult,
        ast.Div,
    ),
)


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled expression that can be reused safely."""

    source: str
    grammar: Grammar
    code: Any
    variables: frozenset[str]


@dataclass(slots=True, frozen=True)
class _Token:
    kind: str
    text: str
    position: int


class _ReferencedVariableVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.referenced_variables: set[str] = set()

    def visit_Name(self, node: ast.Name) -> Any:
        self.referenced_variables.add(node.id)


def _syntax_error(source: str, position: int, message: str) -> ExpressionSyntaxError:
    return ExpressionSyntaxError(f"{message} at position {position} in {source!r}")


def tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(source):
        if source[position].isspace():
            position += 1
            continue
        match = _TOKEN_PATTERN.match(source, position)
        if match is None:
            raise _syntax_error(source, position, f"unexpected character {source[position]!r}")
        kind = match.lastgroup or "op"
        tokens.append(_Token(kind=kind, text=match.group(), position=position))
        position = match.end()
    return tokens


class _Parser:
    """Precedence-climbing parser emitting a Python expression tree."""

    def __init__(self, source: str, grammar: Grammar) -> None:
        self.source = source
        self.grammar = grammar
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> ast.Expression:
        if not self.tokens:
            raise ExpressionSyntaxError(f"{self.grammar.name} expression is empty")
        body = self._parse_binary(1)
        token = self._peek()
        if token is not None:
            if token.text == ")":
                raise _syntax_error(self.source, token.position, "unbalanced parentheses")
            raise _syntax_error(self.source, token.position, f"unexpected token {token.text!r}")
        return ast.fix_missing_locations(ast.Expression(body=body))

    def _peek(self) -> _Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _parse_binary(self, min_precedence: int) -> ast.expr:
        left = self._parse_operand()
        while True:
            token = self._peek()
            if token is None or token.kind != "op" or token.text in {"(", ")"}:
                return left
            precedence = self.grammar.binary_operators.get(token.text)
            if precedence is None:
                raise _syntax_error(
                    self.source,
                    token.position,
                    f"operator {token.text!r} is not supported in {self.grammar.name} expressions",
                )
            if precedence < min_precedence:
                return left
            self._advance()
            right = self._parse_binary(precedence + 1)
            left = _BINARY_NODES[token.text](left, right)

    def _parse_operand(self) -> ast.expr:
        token = self._peek()
        if token is None:
            raise _syntax_error(self.source, len(self.source), "unexpected end of expression")
        self._advance()

        if token.kind == "name":
            if token.text not in self.grammar.variables:
                allowed = ", ".join(sorted(self.grammar.variables))
                raise UnknownVariableError(
                    f"unknown variable {token.text!r} at position {token.position} "
                    f"(expected one of {allowed})"
                )
            return ast.Name(id=token.text, ctx=ast.Load())

        if token.kind == "number":
            if not self.grammar.allow_numbers:
                raise _syntax_error(
                    self.source,
                    token.position,
                    f"numeric literals are not supported in {self.grammar.name} expressions",
                )
            return ast.Constant(value=float(token.text))

        if token.text == "(":
            inner = self._parse_binary(1)
            closing = self._peek()
            if closing is None or closing.text != ")":
                raise _syntax_error(self.source, token.position, "unbalanced parentheses")
            self._advance()
            return inner

        if token.text in self.grammar.unary_operators:
            return _UNARY_NODES[token.text](self._parse_operand())

        raise _syntax_error(self.source, token.position, f"expected operand, found {token.text!r}")


def _validate_ast(tree: ast.AST, grammar: Grammar) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, grammar.allowed_nodes):
            raise ExpressionSyntaxError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id not in grammar.variables:
            raise UnknownVariableError(f"unknown variable {node.id!r}")


def compile_expression(source: str, grammar: Grammar) -> ExpressionProgram:
    tree = _Parser(source, grammar).parse()
    _validate_ast(tree, grammar)
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    logger.debug("expression_compiled", extra={"grammar": grammar.name, "expression": source})
    return ExpressionProgram(
        source=source,
        grammar=grammar,
        code=compile(tree, f"<{grammar.name}-rule>", "eval"),
        variables=frozenset(visitor.referenced_variables),
    )


def evaluate_program(program: ExpressionProgram, context: dict[str, Any]) -> Any:
    missing = program.variables.difference(context)
    if missing:
        raise EvaluationError(f"missing value for variable(s): {', '.join(sorted(missing))}")
    try:
        result = eval(program.code, {"__builtins__": {}}, context)
    except ZeroDivisionError as exc:
        raise ExpressionArithmeticError(f"division by zero in {program.source!r}") from exc
    except OverflowError as exc:
        raise ExpressionArithmeticError(f"numeric overflow in {program.source!r}") from exc
    if program.grammar.numeric and not math.isfinite(result):
        raise ExpressionArithmeticError(f"non-finite result {result!r} in {program.source!r}")
    return result


def safe_eval(source: str, context: dict[str, Any], grammar: Grammar) -> Any:
    return evaluate_program(compile_expression(source, grammar), context)


def extract_expression_variables(source: str, grammar: Grammar) -> set[str]:
    return set(compile_expression(source, grammar).variables)
