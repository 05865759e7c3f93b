from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .rules import ArithmeticRule, ArithmeticRuleExpr, LogicalRule, LogicalRuleExpr

if TYPE_CHECKING:
    from .assignment import Assignment

logger = logging.getLogger(__name__)

BASE_LOGICAL_RULES: tuple[tuple[str, str], ...] = (
    ("M", "A && B && !C"),
    ("P", "A && B && C"),
    ("T", "!A && B && C"),
)

BASE_ARITHMETIC_RULES: tuple[tuple[str, str], ...] = (
    ("M", "D + (D * E / 10)"),
    ("P", "D + (D * (E - F) / 25.5)"),
    ("T", "D - (D * F / 30)"),
)

CUSTOM_LOGICAL_RULES: tuple[tuple[str, str], ...] = (
    ("T", "A && B && !C"),
    ("M", "A && !B && C"),
)

CUSTOM_ARITHMETIC_RULES: tuple[tuple[str, str], ...] = (
    ("P", "2 * D + (D * E / 100)"),
    ("M", "F + D + (D * E / 100)"),
)

RULE_BUNDLES: dict[str, tuple[tuple[tuple[str, str], ...], tuple[tuple[str, str], ...]]] = {
    "base": (BASE_LOGICAL_RULES, BASE_ARITHMETIC_RULES),
    "custom": (CUSTOM_LOGICAL_RULES, CUSTOM_ARITHMETIC_RULES),
}


def compile_bundle(name: str) -> tuple[list[tuple[str, LogicalRule]], list[tuple[str, ArithmeticRule]]]:
    try:
        logical_table, arithmetic_table = RULE_BUNDLES[name]
    except KeyError:
        raise ValueError(f"unknown rule bundle {name!r}") from None
    logical: list[tuple[str, LogicalRule]] = [
        (token, LogicalRuleExpr.from_str(source)) for token, source in logical_table
    ]
    arithmetic: list[tuple[str, ArithmeticRule]] = [
        (token, ArithmeticRuleExpr.from_str(source)) for token, source in arithmetic_table
    ]
    return logical, arithmetic


def load_bundle(assignment: Assignment, name: str) -> None:
    logical, arithmetic = compile_bundle(name)
    assignment.add_rule_bundle(logical, arithmetic)
    logger.info(
        "rule_bundle_loaded",
        extra={"bundle": name, "logical_rules": len(logical), "arithmetic_rules": len(arithmetic)},
    )


def load_base_rules(assignment: Assignment) -> None:
    load_bundle(assignment, "base")


def load_custom_rules(assignment: Assignment) -> None:
    load_bundle(assignment, "custom")
