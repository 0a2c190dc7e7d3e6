import json
import os
from unittest.mock import MagicMock

from selenium.common.exceptions import WebDriverException
from ditto.core.errors import LocatorNotFound, RowFailure
from ditto.core.models import ActionKind, Sequence, Step
from ditto.core.results import RowResult, RowStatus, StepOutcome, StepStatus
from ditto.layers.sense.bundle import ElementBundle
from ditto.reporters.flight_recorder import FlightRecorder


def step(label="Email"):
    return Step(action=ActionKind.TEXT_ENTRY, bundle=ElementBundle(id="email"), label=label, value="x", id="s1")


def test_report_written_with_timeline(tmp_path):
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run1")
    recorder.log_run_start(Sequence("signup", start_url="https://example.com", steps=[step()]), 1, True)
    recorder.log_row_start(0, {"Email": "<b>a@b.com</b>"})
    recorder.log_navigation("https://example.com")
    recorder.log_step(0, step(), StepOutcome("s1", StepStatus.PASSED, value="a@b.com", strategy="identifier"))
    recorder.log_row_result(RowResult(0, RowStatus.PASSED))

    report_path = recorder.generate_report()

    assert report_path == os.path.join(str(tmp_path), "run1", "report.html")
    with open(report_path, encoding="utf-8") as f:
        html_text = f.read()
    assert "via identifier" in html_text
    assert "<b>a@b.com</b>" not in html_text

    with open(os.path.join(str(tmp_path), "run1", "flight_record.json"), encoding="utf-8") as f:
        record = json.load(f)
    assert record["metadata"]["project_id"] == "signup"
    assert record["metadata"]["summary"]["passed"] == 1
    assert [e["event_type"] for e in record["entries"]] == ["run", "row", "navigation", "step", "row_result"]


def test_failed_step_records_failure(tmp_path):
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run2")
    failure = LocatorNotFound("Email not found", stage="locate")
    recorder.log_step(0, step(), StepOutcome("s1", StepStatus.FAILED, failure=failure))
    recorder.log_row_result(RowResult(0, RowStatus.FAILED, failure=RowFailure("Step 'Email' failed", "locate", 0, "s1")))

    entry = recorder.entries[0]
    assert entry.data["failure"]["kind"] == "locator_not_found"
    assert recorder.summary() == {"rows": 1, "passed": 0, "failed": 1, "skipped": 0}


def test_screenshot_attached_to_last_entry(tmp_path):
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run3")
    recorder.log_info("about to fail")
    driver = MagicMock()

    path = recorder.capture_screenshot("row1_step1", driver=driver)

    driver.save_screenshot.assert_called_once_with(path)
    assert recorder.entries[-1].screenshot_path == path


def test_screenshot_failure_is_tolerated(tmp_path):
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run4")
    driver = MagicMock()
    driver.save_screenshot.side_effect = WebDriverException("tab closed")

    assert recorder.capture_screenshot("x", driver=driver) is None
    assert recorder.capture_screenshot("x") is None
