from __future__ import annotations

import logging
import math
import numbers
import threading
from dataclasses import dataclass
from typing import Any

from .expressions import EvaluationError
from .presets import load_base_rules, load_custom_rules
from .rules import (
    ArithmeticFn,
    ArithmeticRule,
    ArithmeticRuleExpr,
    ArithmeticRuleFn,
    LogicalRule,
    LogicalRuleEntry,
    LogicalRuleExpr,
    LogicalRuleFn,
    PredicateFn,
)

logger = logging.getLogger(__name__)

INPUT_FIELDS = ("a", "b", "c", "d", "e", "f")
INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


class InvalidInputError(ValueError):
    """Raised when evaluation inputs or tokens have the wrong shape."""


class NoMatchingLogicalRuleError(EvaluationError):
    """Raised when no logical rule holds for the given booleans."""

    def __init__(self) -> None:
        super().__init__("Failed to apply logical rule: no logical rule matched the input")


class NoArithmeticRuleForTokenError(EvaluationError):
    """Raised when the winning token has no arithmetic rule."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Failed to find arithmetic rule for token {token!r}")
        self.token = token


@dataclass(slots=True, frozen=True)
class InputSet:
    """Set of input arguments for one evaluation."""

    a: bool = False
    b: bool = False
    c: bool = False
    d: float = 0.0
    e: int = 0
    f: int = 0

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> InputSet:
        if not isinstance(payload, dict):
            raise InvalidInputError("input must be an object")
        missing = [name for name in INPUT_FIELDS if name not in payload]
        if missing:
            raise InvalidInputError(f"missing input field(s): {', '.join(missing)}")

        for name in ("a", "b", "c"):
            if not isinstance(payload[name], bool):
                raise InvalidInputError(f"field '{name}' must be a boolean")
        d = payload["d"]
        if isinstance(d, bool) or not isinstance(d, numbers.Real):
            raise InvalidInputError("field 'd' must be a number")
        try:
            d = float(d)
        except OverflowError:
            raise InvalidInputError("field 'd' is out of range") from None
        if not math.isfinite(d):
            raise InvalidInputError("field 'd' must be finite")
        for name in ("e", "f"):
            value = payload[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidInputError(f"field '{name}' must be an integer")
            if not INT32_MIN <= value <= INT32_MAX:
                raise InvalidInputError(f"field '{name}' must fit in a 32-bit signed integer")

        return cls(
            a=payload["a"],
            b=payload["b"],
            c=payload["c"],
            d=d,
            e=payload["e"],
            f=payload["f"],
        )


def _validate_token(token: Any) -> str:
    if not isinstance(token, str) or not token.strip():
        raise InvalidInputError("token must be a non-empty string")
    return token


class Assignment:
    """Rule store for substitution calculation.

    Holds an ordered sequence of logical rules, each paired with the token it
    yields, and a token-keyed mapping of arithmetic rules. ``eval`` walks the
    logical rules in insertion order and keeps the token of the last rule that
    holds, then applies the arithmetic rule registered for that token.

    A single non-reentrant lock guards both collections. Every public mutation
    and ``eval`` hold it for their full duration; expression strings are parsed
    before the lock is taken so a parse failure leaves the store untouched.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._logical_rules: list[LogicalRuleEntry] = []
        self._arithmetic_rules: dict[str, ArithmeticRule] = {}

    @classmethod
    def with_rules(cls, base: bool = False, custom: bool = False) -> Assignment:
        assignment = cls()
        if base:
            assignment.add_base_rules()
        if custom:
            assignment.add_custom_rules()
        return assignment

    @property
    def logical_rule_count(self) -> int:
        with self._lock:
            return len(self._logical_rules)

    @property
    def arithmetic_rule_count(self) -> int:
        with self._lock:
            return len(self._arithmetic_rules)

    def add_logical_rule(self, token: str, rule: LogicalRule) -> None:
        token = _validate_token(token)
        with self._lock:
            self._append_logical(token, rule)

    def add_logical_rule_from_fn(self, token: str, predicate: PredicateFn) -> None:
        self.add_logical_rule(token, LogicalRuleFn(predicate))

    def add_logical_rule_from_str(self, token: str, rule_str: str) -> None:
        token = _validate_token(token)
        self.add_logical_rule(token, LogicalRuleExpr.from_str(rule_str))

    def add_arithmetic_rule(self, token: str, rule: ArithmeticRule) -> None:
        token = _validate_token(token)
        with self._lock:
            self._put_arithmetic(token, rule)

    def add_arithmetic_rule_from_fn(self, token: str, function: ArithmeticFn) -> None:
        self.add_arithmetic_rule(token, ArithmeticRuleFn(function))

    def add_arithmetic_rule_from_str(self, token: str, rule_str: str) -> None:
        token = _validate_token(token)
        self.add_arithmetic_rule(token, ArithmeticRuleExpr.from_str(rule_str))

    def add_rule_bundle(
        self,
        logical_rules: list[tuple[str, LogicalRule]],
        arithmetic_rules: list[tuple[str, ArithmeticRule]],
    ) -> None:
        """Insert a prebuilt bundle of rules under one lock acquisition."""
        for token, _ in [*logical_rules, *arithmetic_rules]:
            _validate_token(token)
        with self._lock:
            for token, rule in logical_rules:
                self._append_logical(token, rule)
            for token, rule in arithmetic_rules:
                self._put_arithmetic(token, rule)

    def add_base_rules(self) -> None:
        load_base_rules(self)

    def add_custom_rules(self) -> None:
        load_custom_rules(self)

    def remove_rules(self) -> None:
        with self._lock:
            self._logical_rules.clear()
            self._arithmetic_rules.clear()
        logger.info("rules_removed")

    def eval(self, a: bool, b: bool, c: bool, d: float, e: int, f: int) -> tuple[str, float]:
        with self._lock:
            token: str | None = None
            for entry in self._logical_rules:
                if entry.rule.apply(a, b, c):
                    token = entry.token

            if token is None:
                raise NoMatchingLogicalRuleError()

            rule = self._arithmetic_rules.get(token)
            if rule is None:
                raise NoArithmeticRuleForTokenError(token)

            result = rule.apply(d, e, f)

        logger.debug("rules_evaluated", extra={"token": token, "result": result})
        return token, result

    def eval_inputs(self, inputs: InputSet) -> tuple[str, float]:
        return self.eval(inputs.a, inputs.b, inputs.c, inputs.d, inputs.e, inputs.f)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "logical_rules": [
                    {"token": entry.token, "rule": entry.rule.describe()} for entry in self._logical_rules
                ],
                "arithmetic_rules": {
                    token: rule.describe() for token, rule in self._arithmetic_rules.items()
                },
            }

    def _append_logical(self, token: str, rule: LogicalRule) -> None:
        self._logical_rules.append(LogicalRuleEntry(token=token, rule=rule))
        logger.info("logical_rule_added", extra={"token": token, "rule": rule.describe()})

    def _put_arithmetic(self, token: str, rule: ArithmeticRule) -> None:
        replaced = token in self._arithmetic_rules
        self._arithmetic_rules[token] = rule
        logger.info(
            "arithmetic_rule_added",
            extra={"token": token, "rule": rule.describe(), "replaced": replaced},
        )
