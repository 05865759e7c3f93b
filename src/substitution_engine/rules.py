from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

from .expressions import (
    ARITHMETIC_GRAMMAR,
    BOOLEAN_GRAMMAR,
    ExpressionArithmeticError,
    ExpressionProgram,
    compile_expression,
    evaluate_program,
)

PredicateFn = Callable[[bool, bool, bool], bool]
ArithmeticFn = Callable[[float, int, int], float]


def _describe_callable(function: Callable[..., object]) -> str:
    return f"<function {getattr(function, '__name__', type(function).__name__)}>"


@dataclass(slots=True, frozen=True)
class LogicalRuleFn:
    """Logical rule backed by a caller-supplied predicate."""

    predicate: PredicateFn

    def apply(self, a: bool, b: bool, c: bool) -> bool:
        return bool(self.predicate(a, b, c))

    def describe(self) -> str:
        return _describe_callable(self.predicate)


@dataclass(slots=True, frozen=True)
class LogicalRuleExpr:
    """Logical rule compiled from a boolean expression over A, B and C."""

    program: ExpressionProgram

    @classmethod
    def from_str(cls, source: str) -> LogicalRuleExpr:
        return cls(program=compile_expression(source, BOOLEAN_GRAMMAR))

    def apply(self, a: bool, b: bool, c: bool) -> bool:
        return bool(evaluate_program(self.program, {"A": bool(a), "B": bool(b), "C": bool(c)}))

    def describe(self) -> str:
        return self.program.source


@dataclass(slots=True, frozen=True)
class ArithmeticRuleFn:
    """Arithmetic rule backed by a caller-supplied function."""

    function: ArithmeticFn

    def apply(self, d: float, e: int, f: int) -> float:
        try:
            result = float(self.function(d, e, f))
        except ZeroDivisionError as exc:
            raise ExpressionArithmeticError(f"division by zero in {self.describe()}") from exc
        except OverflowError as exc:
            raise ExpressionArithmeticError(f"numeric overflow in {self.describe()}") from exc
        if not math.isfinite(result):
            raise ExpressionArithmeticError(f"non-finite result {result!r} in {self.describe()}")
        return result

    def describe(self) -> str:
        return _describe_callable(self.function)


@dataclass(slots=True, frozen=True)
class ArithmeticRuleExpr:
    """Arithmetic rule compiled from an expression over D, E and F."""

    program: ExpressionProgram

    @classmethod
    def from_str(cls, source: str) -> ArithmeticRuleExpr:
        return cls(program=compile_expression(source, ARITHMETIC_GRAMMAR))

    def apply(self, d: float, e: int, f: int) -> float:
        try:
            context = {"D": float(d), "E": float(e), "F": float(f)}
        except OverflowError as exc:
            raise ExpressionArithmeticError(f"input out of range for {self.program.source!r}") from exc
        return float(evaluate_program(self.program, context))

    def describe(self) -> str:
        return self.program.source


LogicalRule = LogicalRuleFn | LogicalRuleExpr
ArithmeticRule = ArithmeticRuleFn | ArithmeticRuleExpr


@dataclass(slots=True, frozen=True)
class LogicalRuleEntry:
    token: str
    rule: LogicalRule
