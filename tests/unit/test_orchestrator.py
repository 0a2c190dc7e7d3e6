import pytest
from unittest.mock import MagicMock

from selenium.common.exceptions import WebDriverException
from ditto.core.config import RunConfig
from ditto.core.driver_factory import PageSession
from ditto.core.errors import (
    ActionFailure,
    ActionFailureReason,
    LocatorNotFound,
    ResolutionFailure,
    SessionConflictError,
)
from ditto.core.models import ActionKind, Sequence, Step
from ditto.core.orchestrator import BatchOrchestrator, StepRunner, StepRunResult
from ditto.core.results import RowStatus, RunStatus, StepStatus
from ditto.core.session import CancellationToken, SessionRegistry
from ditto.layers.sense.bundle import ElementBundle
from ditto.reporters.flight_recorder import FlightRecorder

FAST = RunConfig(random_delay_range=(0.0, 0.0))


class FakePage:
    def __init__(self, url):
        self.url = url
        self.driver = MagicMock()
        self.closed = False

    def wait_until_loaded(self, timeout=30, token=None):
        self.token = token
        return True

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakeProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.pages = []

    def open(self, url):
        if self.fail:
            raise WebDriverException("net::ERR_NAME_NOT_RESOLVED")
        page = FakePage(url)
        self.pages.append(page)
        return page

    def close(self):
        pass


class FakeRunner:
    """Replays canned results; records (label, value) for every executed step."""

    def __init__(self, fail_labels=()):
        self.fail_labels = set(fail_labels)
        self.calls = []

    def run(self, step, value):
        self.calls.append((step.label, value))
        if step.label in self.fail_labels:
            failure = LocatorNotFound(f"{step.label} not found", stage="locate")
            return StepRunResult(False, failure=failure)
        return StepRunResult(True, strategy="identifier")


def signup_sequence(rows=None):
    return Sequence(
        "signup",
        start_url="https://example.com/signup",
        steps=[
            Step(action=ActionKind.TEXT_ENTRY, bundle=ElementBundle(id="email"), label="Email", value="rec@x.com", id="s1"),
            Step(action=ActionKind.TEXT_ENTRY, bundle=ElementBundle(id="name"), label="Name", value="Rec", id="s2"),
            Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"), label="Sign up", id="s3"),
        ],
        rows=rows or [],
    )


def make_orchestrator(tmp_path, runner=None, provider=None, config=FAST, **kwargs):
    runner = runner or FakeRunner()
    provider = provider or FakeProvider()
    orchestrator = BatchOrchestrator(
        provider,
        config,
        recorder=FlightRecorder(output_dir=str(tmp_path), run_name="test"),
        runner_factory=lambda driver: runner,
        **kwargs,
    )
    return orchestrator, runner, provider


def statuses(row):
    return [o.status for o in row.outcomes]


def test_zero_rows_runs_once_with_recorded_values(tmp_path):
    orchestrator, runner, provider = make_orchestrator(tmp_path)

    result = orchestrator.run(signup_sequence())

    assert runner.calls == [("Email", "rec@x.com"), ("Name", "Rec"), ("Sign up", None)]
    assert len(result.rows) == 1
    assert result.passed == 3
    assert result.status is RunStatus.COMPLETED
    assert result.is_finalized
    assert result.report_path.endswith("report.html")
    assert provider.pages[0].url == "https://example.com/signup"


def test_rows_substitute_values(tmp_path):
    orchestrator, runner, _ = make_orchestrator(tmp_path)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"email": "b@x.com", "name": "Bob"}]

    result = orchestrator.run(signup_sequence(), rows=rows)

    assert runner.calls == [
        ("Email", "a@x.com"), ("Name", "Ann"), ("Sign up", None),
        ("Email", "b@x.com"), ("Name", "Bob"), ("Sign up", None),
    ]
    assert result.success


def test_stored_rows_used_by_default(tmp_path):
    orchestrator, runner, _ = make_orchestrator(tmp_path)
    orchestrator.run(signup_sequence(rows=[{"Email": "s@x.com", "Name": "Sam"}]))
    assert runner.calls[0] == ("Email", "s@x.com")


def test_missing_value_skips_text_entry(tmp_path):
    orchestrator, runner, _ = make_orchestrator(tmp_path)

    result = orchestrator.run(signup_sequence(), rows=[{"Email": "a@x.com", "Name": ""}])

    assert ("Name", "Rec") not in runner.calls
    assert statuses(result.rows[0]) == [StepStatus.PASSED, StepStatus.SKIPPED, StepStatus.PASSED]
    assert result.rows[0].status is RowStatus.PASSED


def test_unmatched_row_is_skipped(tmp_path):
    orchestrator, runner, provider = make_orchestrator(tmp_path)

    result = orchestrator.run(signup_sequence(), rows=[{"Phone": "555"}, {"Email": "a@x.com"}])

    assert result.rows[0].status is RowStatus.SKIPPED
    assert statuses(result.rows[0]) == [StepStatus.SKIPPED] * 3
    assert len(provider.pages) == 1
    assert runner.calls[0] == ("Email", "a@x.com")


def test_failure_stops_row_but_not_batch(tmp_path):
    runner = FakeRunner(fail_labels={"Name"})
    orchestrator, _, provider = make_orchestrator(tmp_path, runner=runner)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    result = orchestrator.run(signup_sequence(), rows=rows)

    for row in result.rows:
        assert row.status is RowStatus.FAILED
        assert statuses(row) == [StepStatus.PASSED, StepStatus.FAILED, StepStatus.NOT_RUN]
        assert row.failure.step_id == "s2"
        assert row.failure.stage == "locate"
    assert ("Sign up", None) not in runner.calls
    assert all(page.closed for page in provider.pages)
    assert result.status is RunStatus.COMPLETED
    assert not result.success


def test_navigation_failure_fails_row(tmp_path):
    orchestrator, runner, _ = make_orchestrator(tmp_path, provider=FakeProvider(fail=True))

    result = orchestrator.run(signup_sequence())

    row = result.rows[0]
    assert row.status is RowStatus.FAILED
    assert row.failure.stage == "navigation"
    assert statuses(row) == [StepStatus.NOT_RUN] * 3
    assert runner.calls == []


def test_cancel_stops_before_next_step(tmp_path):
    holder = {}

    def on_step(row_index, step, outcome):
        if step.label == "Email":
            holder["orchestrator"].cancel()

    orchestrator, runner, provider = make_orchestrator(tmp_path, on_step=on_step)
    holder["orchestrator"] = orchestrator
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    result = orchestrator.run(signup_sequence(), rows=rows)

    assert runner.calls == [("Email", "a@x.com")]
    assert result.status is RunStatus.CANCELLED
    assert result.rows[0].status is RowStatus.CANCELLED
    assert statuses(result.rows[0]) == [StepStatus.PASSED, StepStatus.NOT_RUN, StepStatus.NOT_RUN]
    assert result.rows[1].status is RowStatus.CANCELLED
    assert len(provider.pages) == 1
    assert provider.pages[0].closed
    assert not orchestrator.running


def test_on_complete_receives_final_result(tmp_path):
    received = []
    orchestrator, _, _ = make_orchestrator(tmp_path, on_complete=received.append)
    result = orchestrator.run(signup_sequence())
    assert received == [result]


def test_concurrent_run_of_same_project_rejected(tmp_path):
    registry = SessionRegistry()
    registry.start_run("signup")
    orchestrator, _, _ = make_orchestrator(tmp_path, registry=registry)

    with pytest.raises(SessionConflictError):
        orchestrator.run(signup_sequence())


def test_delay_precedence(tmp_path):
    step = Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"))
    override = Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"), delay_seconds=0.25)

    fixed, _, _ = make_orchestrator(tmp_path, config=RunConfig(global_delay_ms=500))
    assert fixed._delay_for(override) == 0.25
    assert fixed._delay_for(step) == 0.5

    random_delay, _, _ = make_orchestrator(tmp_path, config=RunConfig(seed=7))
    assert 1.0 <= random_delay._delay_for(step) <= 3.0


def test_invalid_config_rejected():
    with pytest.raises(ValueError):
        BatchOrchestrator(FakeProvider(), RunConfig(global_delay_ms=-5))


def make_runner():
    tracker, locator, executor = MagicMock(), MagicMock(), MagicMock()
    return StepRunner(tracker, locator, executor), tracker, locator, executor


def test_step_runner_success_reports_strategy():
    runner, tracker, locator, executor = make_runner()
    step = Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"))
    located = locator.locate.return_value
    located.success = True
    located.strategy = "identifier"
    executor.execute.return_value.success = True

    result = runner.run(step, None)

    assert result.success
    assert result.strategy == "identifier"
    executor.execute.assert_called_once_with(step, located.element, None)
    tracker.driver.switch_to.default_content.assert_called_once()


def test_step_runner_resolution_failure_skips_locate():
    runner, tracker, locator, executor = make_runner()
    tracker.resolve.return_value.success = False
    tracker.resolve.return_value.failure = ResolutionFailure("frame gone", stage="frame")

    result = runner.run(Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go")), None)

    assert not result.success
    assert result.failure.stage == "frame"
    locator.locate.assert_not_called()
    tracker.driver.switch_to.default_content.assert_called_once()


def test_step_runner_action_failure():
    runner, tracker, locator, executor = make_runner()
    locator.locate.return_value.success = True
    locator.locate.return_value.strategy = "name"
    action = executor.execute.return_value
    action.success = False
    action.failure = ActionFailure("lost", "execute", ActionFailureReason.TIMEOUT, step_id="s1")

    result = runner.run(Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"), id="s1"), None)

    assert not result.success
    assert result.strategy == "name"
    assert result.failure.reason is ActionFailureReason.TIMEOUT


def test_step_runner_turns_driver_error_into_failure():
    runner, tracker, locator, executor = make_runner()
    tracker.resolve.side_effect = WebDriverException("no such window")

    result = runner.run(Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"), id="s1"), None)

    assert not result.success
    assert result.failure.stage == "driver"
    assert result.failure.step_id == "s1"
    tracker.driver.switch_to.default_content.assert_called_once()


def test_step_runner_for_driver_shares_run_token():
    token = CancellationToken()
    runner = StepRunner.for_driver(MagicMock(), token=token)
    assert runner.executor.token is token


class CrashedTabProvider:
    """Opens real page sessions on a driver whose tab has died."""

    def __init__(self):
        self.driver = MagicMock()
        self.driver.window_handles = ["origin"]
        self.driver.execute_script.side_effect = WebDriverException("tab crashed")
        self.driver.switch_to.window.side_effect = WebDriverException("no such window")
        self.opened = 0

    def open(self, url):
        self.opened += 1
        return PageSession(self.driver, f"tab-{self.opened}", "origin")

    def close(self):
        pass


def test_load_error_fails_only_its_row(tmp_path):
    provider = CrashedTabProvider()
    orchestrator, runner, _ = make_orchestrator(tmp_path, provider=provider)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    result = orchestrator.run(signup_sequence(), rows=rows)

    assert provider.opened == 2
    assert len(result.rows) == 2
    for row in result.rows:
        assert row.status is RowStatus.FAILED
        assert row.failure.stage == "navigation"
        assert "tab crashed" in row.failure.message
        assert statuses(row) == [StepStatus.NOT_RUN] * 3
    assert runner.calls == []
    assert result.is_finalized
    assert result.report_path.endswith("report.html")


def test_row_failures_are_logged_as_errors(tmp_path):
    orchestrator, _, _ = make_orchestrator(tmp_path, provider=FakeProvider(fail=True))

    orchestrator.run(signup_sequence())

    errors = [e for e in orchestrator.recorder.entries if e.event_type == "error"]
    assert len(errors) == 1
    assert "Row 1" in errors[0].message


def test_load_wait_receives_run_token(tmp_path):
    orchestrator, _, provider = make_orchestrator(tmp_path)
    orchestrator.run(signup_sequence())
    assert isinstance(provider.pages[0].token, CancellationToken)


def loop_sequence(page_url=""):
    sequence = signup_sequence()
    sequence.steps[1].page_url = page_url
    sequence.set_loop_start(1)
    return sequence


def test_loop_start_skips_setup_after_first_row(tmp_path):
    orchestrator, runner, provider = make_orchestrator(tmp_path)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    result = orchestrator.run(loop_sequence("https://example.com/signup/details"), rows=rows)

    assert runner.calls == [
        ("Email", "a@x.com"), ("Name", "Ann"), ("Sign up", None),
        ("Name", "Bob"), ("Sign up", None),
    ]
    assert statuses(result.rows[1]) == [StepStatus.SKIPPED, StepStatus.PASSED, StepStatus.PASSED]
    assert result.rows[1].status is RowStatus.PASSED
    assert provider.pages[0].url == "https://example.com/signup"
    assert provider.pages[1].url == "https://example.com/signup/details"


def test_loop_start_falls_back_to_start_url(tmp_path):
    orchestrator, _, provider = make_orchestrator(tmp_path)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    orchestrator.run(loop_sequence(), rows=rows)

    assert [page.url for page in provider.pages] == ["https://example.com/signup"] * 2


def test_setup_repeats_until_a_row_gets_through_it(tmp_path):
    runner = FakeRunner(fail_labels={"Email"})
    orchestrator, _, _ = make_orchestrator(tmp_path, runner=runner)
    rows = [{"Email": "a@x.com", "Name": "Ann"}, {"Email": "b@x.com", "Name": "Bob"}]

    result = orchestrator.run(loop_sequence(), rows=rows)

    assert runner.calls == [("Email", "a@x.com"), ("Email", "b@x.com")]
    assert all(row.failure.step_id == "s1" for row in result.rows)


def test_loop_start_ignored_for_single_pass(tmp_path):
    orchestrator, runner, _ = make_orchestrator(tmp_path)
    orchestrator.run(loop_sequence())
    assert [label for label, _ in runner.calls] == ["Email", "Name", "Sign up"]
