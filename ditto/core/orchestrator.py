"""
Batch Orchestrator - replay a sequence once per data row.

For every row a fresh tab is opened on the sequence's start URL. Each step
gets its row value, waits its delay, has its context resolved and its
element located, and is executed. The first failing step ends the row;
the batch moves on to the next row. A cancellation is honoured before
every step and during every delay.

With a loop start set, the steps before it run only until one row has got
through them; later rows open on the loop start step's page and begin there.
"""

from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, TYPE_CHECKING
import logging
import random
import time

from selenium.common.exceptions import WebDriverException

from ditto.core.config import RunConfig
from ditto.core.errors import ActionFailure, ActionFailureReason, Failure, ResolutionFailure, RowFailure
from ditto.core.models import Sequence, Step
from ditto.core.results import RowResult, RowStatus, RunResult, StepOutcome, StepStatus
from ditto.core.session import CancellationToken, RunSession, SessionRegistry
from ditto.core.tabular import resolve_step_value, row_matches_sequence, should_skip
from ditto.layers.action.executor import StepExecutor
from ditto.layers.action.locator import MultiStrategyLocator
from ditto.layers.sense.context_tracker import ContextTracker
from ditto.reporters.flight_recorder import FlightRecorder

if TYPE_CHECKING:
    from ditto.core.driver_factory import BrowserPageProvider
    from selenium.webdriver.remote.webdriver import WebDriver

logger = logging.getLogger(__name__)


@dataclass
class StepRunResult:
    success: bool
    strategy: Optional[str] = None
    failure: Optional[Failure] = None
    duration_ms: float = 0.0


class StepRunner:
    """
    Resolve, locate and execute one step in the driver's current tab.

    The driver is always switched back to the top document afterwards.
    """

    def __init__(self, tracker: ContextTracker, locator: MultiStrategyLocator, executor: StepExecutor):
        self.tracker = tracker
        self.locator = locator
        self.executor = executor

    @classmethod
    def for_driver(cls, driver: "WebDriver", config: Optional[RunConfig] = None,
                   token: Optional[CancellationToken] = None) -> "StepRunner":
        config = config or RunConfig()
        return cls(
            ContextTracker(driver),
            MultiStrategyLocator(config.locator),
            StepExecutor(driver, token=token),
        )

    def run(self, step: Step, value: Optional[str]) -> StepRunResult:
        start_time = time.time()

        def elapsed() -> float:
            return (time.time() - start_time) * 1000

        try:
            resolved = self.tracker.resolve(step.bundle)
            if not resolved.success:
                logger.warning("Step %s: %s", step.id, resolved.failure)
                return StepRunResult(False, failure=resolved.failure, duration_ms=elapsed())

            located = self.locator.locate(step.bundle, resolved.context)
            if not located.success:
                return StepRunResult(False, failure=located.failure, duration_ms=elapsed())

            action = self.executor.execute(step, located.element, value)
            if not action.success:
                logger.warning("Step %s: %s", step.id, action.failure)
                return StepRunResult(False, located.strategy, action.failure, elapsed())
            return StepRunResult(True, located.strategy, duration_ms=elapsed())
        except WebDriverException as e:
            # Lost tab or session.
            logger.warning("Step %s: driver error %s", step.id, e.msg)
            failure = ActionFailure(f"Driver error: {e.msg}", "driver", ActionFailureReason.THREW, step.id)
            return StepRunResult(False, failure=failure, duration_ms=elapsed())
        finally:
            try:
                self.tracker.driver.switch_to.default_content()
            except WebDriverException as e:
                logger.debug("Could not return to top document: %s", e.msg)


RunnerFactory = Callable[["WebDriver"], StepRunner]


class BatchOrchestrator:
    """
    Drive a sequence over tabular rows.

    Example:
        >>> provider = BrowserPageProvider(headless=True)
        >>> orchestrator = BatchOrchestrator(provider, RunConfig(global_delay_ms=500))
        >>> result = orchestrator.run(sequence, rows=[{"Email": "a@b.com"}])
        >>> print(f"{result.passed} passed, {result.failed} failed")
    """

    def __init__(
        self,
        page_provider: "BrowserPageProvider",
        config: Optional[RunConfig] = None,
        recorder: Optional[FlightRecorder] = None,
        runner_factory: Optional[RunnerFactory] = None,
        registry: Optional[SessionRegistry] = None,
        on_step: Optional[Callable[[int, Step, StepOutcome], None]] = None,
        on_complete: Optional[Callable[[RunResult], None]] = None,
    ):
        """
        Args:
            page_provider: Opens one fresh page per row
            config: Run configuration (delays, timeouts, thresholds)
            recorder: FlightRecorder for the run timeline; one is created per run if omitted
            runner_factory: Builds the StepRunner for a page's driver
            registry: Session registry enforcing one run per project. Without
                one the orchestrator keeps a private registry, which only
                guards against overlapping runs of this orchestrator.
            on_step: Called after every step outcome is settled
            on_complete: Called with the finalized RunResult
        """
        self.page_provider = page_provider
        self.config = (config or RunConfig()).validate()
        self.recorder = recorder
        self.runner_factory = runner_factory or self._default_runner
        self.registry = registry or SessionRegistry()
        self.on_step = on_step
        self.on_complete = on_complete
        self._rng = random.Random(self.config.seed)
        self._session: Optional[RunSession] = None

    def _default_runner(self, driver: "WebDriver") -> StepRunner:
        token = self._session.token if self._session else None
        return StepRunner.for_driver(driver, self.config, token=token)

    def cancel(self) -> None:
        """Stop the active run before its next step."""
        if self._session is not None:
            logger.info("Cancellation requested for run %s", self._session.run_id)
            self._session.token.cancel()

    @property
    def running(self) -> bool:
        return self._session is not None

    def run(self, sequence: Sequence, rows: Optional[List[Mapping[str, str]]] = None) -> RunResult:
        """
        Execute ``sequence`` once per row.

        ``rows`` defaults to the rows stored on the sequence. With no rows the
        sequence runs once with its captured values.
        """
        rows = sequence.rows if rows is None else rows
        with self.registry.running(sequence.project_id) as session:
            self._session = session
            try:
                return self._run(sequence, list(rows or []), session)
            finally:
                self._session = None

    def _run(self, sequence: Sequence, rows: List[Mapping[str, str]], session: RunSession) -> RunResult:
        data_driven = bool(rows)
        batch = rows if data_driven else [{}]
        token = session.token
        recorder = self.recorder or FlightRecorder(
            output_dir=self.config.report_dir,
            run_name=f"{sequence.project_id}_{session.run_id}",
        )
        result = RunResult(project_id=sequence.project_id, run_id=session.run_id)
        recorder.log_run_start(sequence, len(batch), data_driven)
        logger.info("Run %s: %d steps x %d rows", session.run_id, len(sequence), len(batch))

        setup_done = False
        for index, row in enumerate(batch):
            if token.cancelled:
                result.add_row(self._untouched_row(index, sequence, RowStatus.CANCELLED, StepStatus.NOT_RUN))
                continue
            if data_driven and self.config.skip_unmatched_rows and not row_matches_sequence(row, sequence):
                recorder.log_warning(f"Row {index + 1}: no column matches any step label, skipped")
                result.add_row(self._untouched_row(index, sequence, RowStatus.SKIPPED, StepStatus.SKIPPED))
                continue

            loop_from = (sequence.loop_start or 0) if setup_done else 0
            row_result = self._run_row(index, row, sequence, data_driven, token, recorder, loop_from)
            setup_done = setup_done or self._setup_completed(row_result, sequence.loop_start)
            recorder.log_row_result(row_result)
            result.add_row(row_result)

        cancelled = token.cancelled
        report_path = recorder.generate_report()
        result.finalize(cancelled=cancelled, report_path=report_path)
        logger.info(
            "Run %s %s: %d passed, %d failed, %d skipped, %d not run",
            result.run_id, result.status.value, result.passed, result.failed, result.skipped, result.not_run,
        )
        if self.on_complete:
            self.on_complete(result)
        return result

    def _untouched_row(self, index: int, sequence: Sequence, status: RowStatus, step_status: StepStatus) -> RowResult:
        return RowResult(
            row_index=index,
            status=status,
            outcomes=[StepOutcome(step.id, step_status, label=step.label) for step in sequence.steps],
        )

    def _run_row(
        self,
        index: int,
        row: Mapping[str, str],
        sequence: Sequence,
        data_driven: bool,
        token: CancellationToken,
        recorder: FlightRecorder,
        loop_from: int = 0,
    ) -> RowResult:
        outcomes = [StepOutcome(step.id, label=step.label) for step in sequence.steps]
        row_result = RowResult(row_index=index, outcomes=outcomes)
        recorder.log_row_start(index, row)
        url = sequence.loop_url() if loop_from else sequence.start_url

        try:
            page = self.page_provider.open(url)
        except WebDriverException as e:
            return self._fail_navigation(row_result, url, e, recorder)

        with page:
            try:
                page.wait_until_loaded(self.config.page_load_timeout, token)
            except WebDriverException as e:
                return self._fail_navigation(row_result, url, e, recorder)
            recorder.log_navigation(url)
            if loop_from:
                recorder.log_info(f"Row {index + 1}: setup done, starting at step {loop_from + 1}")
            runner = self.runner_factory(page.driver)

            for position, step in enumerate(sequence.steps):
                outcome = outcomes[position]
                if position < loop_from:
                    outcome.status = StepStatus.SKIPPED
                    continue
                if token.cancelled:
                    self._cancel_rest(row_result, position, recorder)
                    break

                if should_skip(step, row, sequence.mappings, data_driven):
                    outcome.status = StepStatus.SKIPPED
                    recorder.log_step(index, step, outcome)
                    self._notify(index, step, outcome)
                    continue

                value = resolve_step_value(step, row, sequence.mappings, data_driven)
                if token.wait(self._delay_for(step)):
                    self._cancel_rest(row_result, position, recorder)
                    break

                outcome.status = StepStatus.RUNNING
                outcome.value = value
                run = runner.run(step, value)
                outcome.strategy = run.strategy
                outcome.duration_ms = run.duration_ms
                outcome.status = StepStatus.PASSED if run.success else StepStatus.FAILED
                outcome.failure = run.failure
                recorder.log_step(index, step, outcome)
                self._notify(index, step, outcome)

                if not run.success:
                    recorder.capture_screenshot(f"row{index + 1}_step{position + 1}", driver=page.driver)
                    row_result.status = RowStatus.FAILED
                    row_result.failure = RowFailure(
                        f"Step '{step.label or step.id}' failed: {run.failure}",
                        run.failure.stage if run.failure else "",
                        index,
                        step.id,
                        run.failure,
                    )
                    recorder.log_error(f"Row {index + 1}: {row_result.failure.message}")
                    self._mark_rest(outcomes, position + 1, StepStatus.NOT_RUN)
                    break

        return row_result

    def _fail_navigation(self, row_result: RowResult, url: str, error: WebDriverException,
                         recorder: FlightRecorder) -> RowResult:
        failure = ResolutionFailure(f"Could not load {url}: {error.msg}", stage="navigation")
        recorder.log_error(f"Row {row_result.row_index + 1}: {failure.message}", error)
        self._mark_rest(row_result.outcomes, 0, StepStatus.NOT_RUN)
        row_result.status = RowStatus.FAILED
        row_result.failure = RowFailure(str(failure), "navigation", row_result.row_index, None, failure)
        return row_result

    @staticmethod
    def _setup_completed(row_result: RowResult, loop_start: Optional[int]) -> bool:
        """True once every step before the loop start passed or was skipped."""
        if not loop_start:
            return True
        done = (StepStatus.PASSED, StepStatus.SKIPPED)
        return all(o.status in done for o in row_result.outcomes[:loop_start])

    def _cancel_rest(self, row_result: RowResult, position: int, recorder: FlightRecorder) -> None:
        self._mark_rest(row_result.outcomes, position, StepStatus.NOT_RUN)
        row_result.status = RowStatus.CANCELLED
        recorder.log_warning(f"Row {row_result.row_index + 1}: cancelled before step {position + 1}")

    @staticmethod
    def _mark_rest(outcomes: List[StepOutcome], start: int, status: StepStatus) -> None:
        for outcome in outcomes[start:]:
            outcome.status = status

    def _notify(self, index: int, step: Step, outcome: StepOutcome) -> None:
        if self.on_step:
            self.on_step(index, step, outcome)

    def _delay_for(self, step: Step) -> float:
        """Step override, else the global delay, else a random human-like pause."""
        if step.delay_seconds is not None:
            return step.delay_seconds
        if self.config.global_delay_ms > 0:
            return self.config.global_delay_ms / 1000.0
        low, high = self.config.random_delay_range
        return self._rng.uniform(low, high)

    def close(self) -> None:
        self.page_provider.close()

    def __enter__(self) -> "BatchOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
