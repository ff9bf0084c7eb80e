from core.logger import setup_logger

logger = setup_logger("FlowRules")


def _to_float(value):
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def evaluate_rule(value, operator: str, compare_value) -> bool:
    """
    Avalia uma única regra de condição.
    Comparações de texto são feitas em minúsculo; greater_than/less_than convertem para float.
    Operador ausente ou desconhecido => False.
    """
    str_value = str(value if value is not None else "").lower()
    str_compare = str(compare_value if compare_value is not None else "").lower()

    if operator in ("equals", "equal"):
        return str_value == str_compare
    if operator in ("not_equals", "not_equal"):
        return str_value != str_compare
    if operator == "contains":
        return str_compare in str_value
    if operator == "not_contains":
        return str_compare not in str_value
    if operator == "starts_with":
        return str_value.startswith(str_compare)
    if operator == "ends_with":
        return str_value.endswith(str_compare)
    if operator == "is_empty":
        return str_value == ""
    if operator == "is_not_empty":
        return str_value != ""
    if operator in ("greater_than", "less_than"):
        left, right = _to_float(value), _to_float(compare_value)
        # Valores não numéricos nunca satisfazem a comparação
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right

    logger.warning(f"⚠️ Unknown condition operator: {operator!r}")
    return False


def evaluate_rules(rules, variables: dict, combinator: str = "AND") -> bool:
    """Combina as regras com AND (padrão) ou OR. Lista vazia: AND => True, OR => False."""
    combinator = (combinator or "AND").upper()
    result = combinator != "OR"

    for rule in rules or []:
        rule_result = evaluate_rule(variables.get(rule.variable) or "", rule.operator, rule.value)
        if combinator == "OR":
            result = result or rule_result
        else:
            result = result and rule_result

    return result
