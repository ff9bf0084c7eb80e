"""Tests for condition rule evaluation."""
import pytest

from schemas import ConditionRule
from services.rules import evaluate_rule, evaluate_rules


@pytest.mark.parametrize("value,expected", [("21", True), ("15", False), ("18", False), ("abc", False)])
def test_greater_than_is_numeric(value, expected):
    assert evaluate_rule(value, "greater_than", "18") is expected


def test_less_than_is_numeric():
    assert evaluate_rule("9", "less_than", "10") is True
    assert evaluate_rule("100", "less_than", "10") is False


def test_text_operators_ignore_case():
    assert evaluate_rule("SIM", "equals", "sim") is True
    assert evaluate_rule("Quero comprar", "contains", "COMPRAR") is True
    assert evaluate_rule("Quero comprar", "not_contains", "vender") is True
    assert evaluate_rule("Bom dia", "starts_with", "bom") is True
    assert evaluate_rule("Bom dia", "ends_with", "DIA") is True
    assert evaluate_rule("a", "not_equals", "b") is True


def test_empty_operators():
    assert evaluate_rule("", "is_empty", None) is True
    assert evaluate_rule(None, "is_empty", None) is True
    assert evaluate_rule("x", "is_not_empty", None) is True


def test_unknown_operator_is_false():
    assert evaluate_rule("x", "matches_regex", "x") is False


def test_rules_are_combined_with_and_by_default():
    rules = [
        ConditionRule(variable="idade", operator="greater_than", value="18"),
        ConditionRule(variable="cidade", operator="equals", value="recife"),
    ]
    assert evaluate_rules(rules, {"idade": "30", "cidade": "Recife"}) is True
    assert evaluate_rules(rules, {"idade": "30", "cidade": "Natal"}) is False


def test_rules_combined_with_or():
    rules = [
        ConditionRule(variable="idade", operator="greater_than", value="18"),
        ConditionRule(variable="cidade", operator="equals", value="recife"),
    ]
    assert evaluate_rules(rules, {"idade": "10", "cidade": "Recife"}, "OR") is True
    assert evaluate_rules(rules, {"idade": "10", "cidade": "Natal"}, "or") is False


def test_missing_variable_is_treated_as_empty():
    rule = ConditionRule(variable="email", operator="is_empty")
    assert evaluate_rules([rule], {}) is True


def test_empty_rule_list():
    assert evaluate_rules([], {}, "AND") is True
    assert evaluate_rules([], {}, "OR") is False
