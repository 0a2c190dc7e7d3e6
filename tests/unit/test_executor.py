import pytest
from unittest.mock import MagicMock, patch

from selenium.common.exceptions import (
    JavascriptException,
    StaleElementReferenceException,
    TimeoutException,
)
from ditto.core.errors import ActionFailureReason
from ditto.core.models import ActionKind, Step
from ditto.layers.action.executor import StepExecutor
from ditto.layers.sense.bundle import ElementBundle


def make_executor(*script_results):
    driver = MagicMock()
    # First call is the scroll check, second the action itself.
    driver.execute_script.side_effect = [False, *script_results]
    executor = StepExecutor(driver)
    return driver, executor


def step(action, value=None):
    return Step(action=action, bundle=ElementBundle(id="field"), label="Field", value=value, id="step-1")


def test_click_dispatches_pointer_sequence():
    driver, executor = make_executor({"ok": True})
    element = MagicMock()

    with patch.object(executor, "_wait_for_stability") as settle:
        result = executor.execute(step(ActionKind.CLICK), element)

    assert result.success
    assert result.step_id == "step-1"
    script, target = driver.execute_script.call_args.args
    assert "pointerdown" in script and "mouseup" in script
    assert target is element
    settle.assert_called_once()


def test_type_uses_row_value_over_recorded():
    driver, executor = make_executor({"ok": True})
    element = MagicMock()

    result = executor.execute(step(ActionKind.TEXT_ENTRY, value="recorded"), element, value="from-row")

    assert result.success
    script, target, text = driver.execute_script.call_args.args
    assert text == "from-row"
    assert "'input'" in script and "'change'" in script


def test_type_falls_back_to_recorded_value():
    driver, executor = make_executor({"ok": True})
    executor.execute(step(ActionKind.TEXT_ENTRY, value="recorded"), MagicMock())
    assert driver.execute_script.call_args.args[2] == "recorded"


def test_submit_sends_enter_keys():
    driver, executor = make_executor({"ok": True})

    with patch.object(executor, "_wait_for_stability"):
        result = executor.execute(step(ActionKind.KEY_SUBMIT), MagicMock(), value="query")

    assert result.success
    script = driver.execute_script.call_args.args[0]
    assert "keydown" in script and "keyCode: 13" in script
    assert driver.execute_script.call_args.args[2] == "query"


def test_page_rejection_is_reported():
    driver, executor = make_executor({"ok": False, "reason": "field is disabled or read-only"})

    result = executor.execute(step(ActionKind.TEXT_ENTRY, value="x"), MagicMock())

    assert not result.success
    assert result.failure.reason is ActionFailureReason.REJECTED
    assert result.failure.step_id == "step-1"
    assert result.error == "field is disabled or read-only"


@pytest.mark.parametrize("exc, reason", [
    (StaleElementReferenceException("stale"), ActionFailureReason.STALE),
    (TimeoutException("lost response"), ActionFailureReason.TIMEOUT),
    (JavascriptException("boom"), ActionFailureReason.THREW),
])
def test_driver_errors_become_failures(exc, reason):
    driver, executor = make_executor(exc)

    result = executor.execute(step(ActionKind.CLICK), MagicMock())

    assert not result.success
    assert result.failure.reason is reason
    assert result.failure.step_id == "step-1"


def test_scroll_waits_on_run_token_when_element_moved():
    driver = MagicMock()
    driver.execute_script.side_effect = [True, {"ok": True}]
    token = MagicMock()
    executor = StepExecutor(driver, token=token)

    executor.type_text(MagicMock(), "abc")

    token.wait.assert_called_once_with(StepExecutor.SCROLL_SETTLE_SECONDS)
