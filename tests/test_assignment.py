import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from substitution_engine.assignment import (
    Assignment,
    InputSet,
    InvalidInputError,
    NoArithmeticRuleForTokenError,
    NoMatchingLogicalRuleError,
)
from substitution_engine.expressions import ExpressionArithmeticError, ExpressionSyntaxError
from substitution_engine.rules import ArithmeticRuleExpr, ArithmeticRuleFn, LogicalRuleExpr, LogicalRuleFn

DEFAULT_INPUTS = InputSet()


def test_new_assignment_is_empty() -> None:
    assignment = Assignment()
    assert assignment.logical_rule_count == 0
    assert assignment.arithmetic_rule_count == 0


def test_add_logical_rule_variants_append_in_order() -> None:
    assignment = Assignment()
    assignment.add_logical_rule("M", LogicalRuleFn(lambda a, b, c: a))
    assignment.add_logical_rule_from_fn("P", lambda a, b, c: b)
    assignment.add_logical_rule_from_str("T", "C")
    assignment.add_logical_rule("M", LogicalRuleExpr.from_str("A || B"))

    assert assignment.logical_rule_count == 4
    assert assignment.arithmetic_rule_count == 0
    assert [entry["token"] for entry in assignment.snapshot()["logical_rules"]] == ["M", "P", "T", "M"]


def test_failed_parse_leaves_store_unchanged() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_str("M", "A")
    assignment.add_arithmetic_rule_from_str("M", "D")

    with pytest.raises(ExpressionSyntaxError):
        assignment.add_logical_rule_from_str("P", "Z+X")
    with pytest.raises(ExpressionSyntaxError):
        assignment.add_arithmetic_rule_from_str("P", "Z&&X")

    assert assignment.logical_rule_count == 1
    assert assignment.arithmetic_rule_count == 1


def test_arithmetic_rules_are_keyed_by_token() -> None:
    assignment = Assignment()
    assignment.add_arithmetic_rule("M", ArithmeticRuleFn(lambda d, e, f: d))
    assignment.add_arithmetic_rule("T", ArithmeticRuleExpr.from_str("E"))
    assignment.add_arithmetic_rule_from_fn("T", lambda d, e, f: float(f))

    assert assignment.arithmetic_rule_count == 2
    assert assignment.snapshot()["arithmetic_rules"]["M"] == "<function <lambda>>"


def test_arithmetic_rule_overwrite_uses_latest() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_fn("M", lambda a, b, c: True)
    assignment.add_arithmetic_rule_from_str("M", "D + E")
    assignment.add_arithmetic_rule_from_str("M", "D * E")

    assert assignment.eval(False, False, False, 2.0, 3, 0) == ("M", 6.0)


def test_last_matching_logical_rule_wins() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_fn("X", lambda a, b, c: True)
    assignment.add_logical_rule_from_fn("Y", lambda a, b, c: True)
    assignment.add_arithmetic_rule_from_fn("X", lambda d, e, f: 1.0)
    assignment.add_arithmetic_rule_from_fn("Y", lambda d, e, f: 2.0)

    assert assignment.eval(True, True, True, 0.0, 0, 0) == ("Y", 2.0)


def test_later_non_matching_rule_does_not_clear_token() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_str("X", "A")
    assignment.add_logical_rule_from_str("Y", "B")
    assignment.add_arithmetic_rule_from_str("X", "D")
    assignment.add_arithmetic_rule_from_str("Y", "E")

    assert assignment.eval(True, False, False, 5.0, 7, 0) == ("X", 5.0)


def test_eval_empty_store_fails_with_no_matching_rule() -> None:
    assignment = Assignment()
    assignment.add_arithmetic_rule_from_fn("M", lambda d, e, f: 0.0)
    with pytest.raises(NoMatchingLogicalRuleError, match="Failed to apply logical rule"):
        assignment.eval_inputs(DEFAULT_INPUTS)


def test_eval_missing_arithmetic_rule() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_fn("Z", lambda a, b, c: True)
    with pytest.raises(NoArithmeticRuleForTokenError, match="Failed to find arithmetic rule") as excinfo:
        assignment.eval_inputs(DEFAULT_INPUTS)
    assert excinfo.value.token == "Z"


def test_eval_overrides() -> None:
    assignment = Assignment()
    assignment.add_logical_rule("M", LogicalRuleFn(lambda a, b, c: a))
    assignment.add_logical_rule("T", LogicalRuleFn(lambda a, b, c: b))
    assignment.add_arithmetic_rule("M", ArithmeticRuleFn(lambda d, e, f: 2.0))
    assignment.add_arithmetic_rule("T", ArithmeticRuleFn(lambda d, e, f: 3.0))

    assert assignment.eval(True, False, False, 0.0, 0, 0) == ("M", 2.0)
    assert assignment.eval(False, True, False, 0.0, 0, 0) == ("T", 3.0)

    assignment.add_logical_rule("T", LogicalRuleFn(lambda a, b, c: a))
    assert assignment.eval(True, False, False, 0.0, 0, 0) == ("T", 3.0)

    assignment.add_arithmetic_rule("T", ArithmeticRuleFn(lambda d, e, f: 4.0))
    assert assignment.eval(True, False, False, 0.0, 0, 0) == ("T", 4.0)

    assignment.add_logical_rule("P", LogicalRuleFn(lambda a, b, c: a))
    with pytest.raises(NoArithmeticRuleForTokenError):
        assignment.eval(True, False, False, 0.0, 0, 0)


def test_remove_rules_clears_everything_and_is_idempotent() -> None:
    assignment = Assignment.with_rules(base=True, custom=True)
    assignment.remove_rules()
    assignment.remove_rules()

    assert assignment.logical_rule_count == 0
    assert assignment.arithmetic_rule_count == 0
    with pytest.raises(NoMatchingLogicalRuleError):
        assignment.eval(True, True, True, 1.0, 1, 1)


def test_division_by_zero_surfaces_from_eval() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_str("M", "A")
    assignment.add_arithmetic_rule_from_str("M", "D / E")
    with pytest.raises(ExpressionArithmeticError):
        assignment.eval(True, False, False, 1.0, 0, 0)


def test_oversized_integer_input_is_an_arithmetic_error() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_str("M", "A")
    assignment.add_arithmetic_rule_from_str("M", "D + E")
    with pytest.raises(ExpressionArithmeticError, match="out of range"):
        assignment.eval(True, False, False, 1.0, 10**400, 0)


def test_input_set_accepts_int32_bounds() -> None:
    inputs = InputSet.from_mapping({"a": True, "b": True, "c": True, "d": 0, "e": 2**31 - 1, "f": -(2**31)})
    assert (inputs.e, inputs.f) == (2**31 - 1, -(2**31))


def test_end_to_end_string_rules() -> None:
    assignment = Assignment()
    assignment.add_logical_rule_from_str("M", "A && B && C")
    assignment.add_arithmetic_rule_from_str("M", "D + E * F")

    token, result = assignment.eval(True, True, True, 1.2, 3, 4)
    assert token == "M"
    assert result == pytest.approx(13.2)


@pytest.mark.parametrize("token", ["", "   ", None, 5])
def test_invalid_tokens_are_rejected(token) -> None:
    assignment = Assignment()
    with pytest.raises(InvalidInputError):
        assignment.add_logical_rule_from_str(token, "A")
    with pytest.raises(InvalidInputError):
        assignment.add_arithmetic_rule_from_str(token, "D")
    assert assignment.logical_rule_count == 0
    assert assignment.arithmetic_rule_count == 0


def test_input_set_from_mapping() -> None:
    inputs = InputSet.from_mapping({"a": True, "b": False, "c": True, "d": 2, "e": 3, "f": -4})
    assert inputs == InputSet(a=True, b=False, c=True, d=2.0, e=3, f=-4)
    assert isinstance(inputs.d, float)


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"a": True, "b": False, "c": True, "d": 1.0, "e": 3}, "missing input field"),
        ({"a": 1, "b": False, "c": True, "d": 1.0, "e": 3, "f": 4}, "'a' must be a boolean"),
        ({"a": True, "b": False, "c": True, "d": "1.0", "e": 3, "f": 4}, "'d' must be a number"),
        ({"a": True, "b": False, "c": True, "d": 1.0, "e": 3.5, "f": 4}, "'e' must be an integer"),
        ({"a": True, "b": False, "c": True, "d": 1.0, "e": 3, "f": True}, "'f' must be an integer"),
        ({"a": True, "b": False, "c": True, "d": 10**400, "e": 3, "f": 4}, "'d' is out of range"),
        ({"a": True, "b": False, "c": True, "d": float("inf"), "e": 3, "f": 4}, "'d' must be finite"),
        ({"a": True, "b": False, "c": True, "d": 1.0, "e": 2**31, "f": 4}, "'e' must fit in a 32-bit"),
        ({"a": True, "b": False, "c": True, "d": 1.0, "e": 3, "f": -(2**31) - 1}, "'f' must fit in a 32-bit"),
    ],
)
def test_input_set_rejects_bad_payloads(payload, message) -> None:
    with pytest.raises(InvalidInputError, match=message):
        InputSet.from_mapping(payload)


def test_mutation_waits_for_running_evaluation() -> None:
    assignment = Assignment()
    entered = threading.Event()
    release = threading.Event()

    def blocking_predicate(a, b, c):
        entered.set()
        release.wait(timeout=5)
        return True

    assignment.add_logical_rule_from_fn("M", blocking_predicate)
    assignment.add_arithmetic_rule_from_str("M", "D")

    with ThreadPoolExecutor(max_workers=2) as pool:
        evaluation = pool.submit(assignment.eval, True, True, True, 1.5, 0, 0)
        assert entered.wait(timeout=5)
        removal = pool.submit(assignment.remove_rules)
        time.sleep(0.1)
        assert not removal.done()

        release.set()
        assert evaluation.result(timeout=5) == ("M", 1.5)
        removal.result(timeout=5)

    assert assignment.logical_rule_count == 0
    assert assignment.arithmetic_rule_count == 0


def test_interleaved_mutations_and_evaluations_see_whole_bundles() -> None:
    assignment = Assignment()

    def mutate(index: int) -> None:
        if index % 2:
            assignment.remove_rules()
        else:
            assignment.add_base_rules()

    def evaluate(index: int) -> tuple[str, float] | None:
        try:
            return assignment.eval(True, True, False, 2.0, 3, 4)
        except NoMatchingLogicalRuleError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = []
        for index in range(300):
            futures.append(pool.submit(mutate, index))
            futures.append(pool.submit(evaluate, index))
        outcomes = [future.result(timeout=10) for future in futures]

    evaluations = outcomes[1::2]
    assert len(evaluations) == 300
    for outcome in evaluations:
        if outcome is None:
            continue
        token, result = outcome
        assert token == "M"
        assert result == pytest.approx(2.6)
