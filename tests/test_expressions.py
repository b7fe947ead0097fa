from ruleflow.service.expressions import ExpressionGate
from ruleflow.service.sandbox import ExpressionSandbox
from ruleflow.storage.models import ExecutionContext


def _gate() -> ExpressionGate:
    return ExpressionGate(ExpressionSandbox())


def test_missing_condition_is_satisfied():
    context = ExecutionContext(flow={})

    assert _gate().evaluate_condition(None, context) is True
    assert _gate().evaluate_condition("   ", context) is True


def test_condition_sees_namespace_directly_and_under_flow():
    context = ExecutionContext(flow={"amount": 150, "customer": {"tier": "gold"}})
    gate = _gate()

    assert gate.evaluate_condition("amount > 100", context) is True
    assert gate.evaluate_condition("flow.customer.tier == 'gold'", context) is True
    assert gate.evaluate_condition("amount < 100", context) is False


def test_condition_errors_degrade_to_false():
    context = ExecutionContext(flow={"amount": 1})
    gate = _gate()

    assert gate.evaluate_condition("unknown_name > 1", context) is False
    assert gate.evaluate_condition("amount / 0 > 1", context) is False
    assert gate.evaluate_condition("amount >", context) is False


def test_transform_success_and_failure():
    context = ExecutionContext(flow={"price": 10, "qty": 3})
    gate = _gate()

    assert gate.evaluate_transform("price * qty", context) == (True, 30)
    assert gate.evaluate_transform("price * missing", context) == (False, None)
