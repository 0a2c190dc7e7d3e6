"""
Flight Recorder - Run timeline logging and report generation.

Captures every navigation, step outcome and row summary of a batch run and
writes them as ``flight_record.json`` plus a self-contained ``report.html``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING
from datetime import datetime
import html
import json
import logging
import os

from selenium.common.exceptions import WebDriverException

if TYPE_CHECKING:
    from ditto.core.models import Sequence, Step
    from ditto.core.results import RowResult, StepOutcome

logger = logging.getLogger(__name__)


@dataclass
class LogEntry:
    """A single log entry in the flight record."""
    timestamp: datetime
    row: int
    event_type: str  # 'run', 'navigation', 'row', 'step', 'row_result', 'warning', 'error', 'info'
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    screenshot_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "row": self.row,
            "event_type": self.event_type,
            "message": self.message,
            "data": self.data,
            "screenshot_path": self.screenshot_path,
        }


class FlightRecorder:
    """
    Records what happened during a batch run.

    Example:
        >>> recorder = FlightRecorder(output_dir="./ditto_reports")
        >>> recorder.log_navigation("https://example.com")
        >>> recorder.log_step(0, step, outcome)
        >>> report_path = recorder.generate_report()
    """

    def __init__(
        self,
        output_dir: str = "./ditto_reports",
        run_name: Optional[str] = None,
    ):
        """
        Initialize the flight recorder.

        Args:
            output_dir: Directory for reports and screenshots
            run_name: Optional name for this run
        """
        self.output_dir = output_dir
        self.run_name = run_name or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.entries: List[LogEntry] = []
        self.metadata: Dict[str, Any] = {
            "start_time": datetime.now().isoformat(),
            "run_name": self.run_name,
        }
        self._current_row = -1

        self.run_dir = os.path.join(output_dir, self.run_name)
        self.screenshots_dir = os.path.join(self.run_dir, "screenshots")
        os.makedirs(self.screenshots_dir, exist_ok=True)

    def _add(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None,
             row: Optional[int] = None) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(),
            row=self._current_row if row is None else row,
            event_type=event_type,
            message=message,
            data=data or {},
        )
        self.entries.append(entry)
        return entry

    def log_run_start(self, sequence: "Sequence", row_count: int, data_driven: bool) -> None:
        self.metadata.update({
            "project_id": sequence.project_id,
            "url": sequence.start_url,
            "step_count": len(sequence.steps),
            "row_count": row_count,
            "data_driven": data_driven,
        })
        self._add("run", f"Run started: {len(sequence.steps)} steps x {row_count} rows",
                  {"project_id": sequence.project_id, "data_driven": data_driven}, row=-1)

    def log_navigation(self, url: str) -> None:
        """Log a navigation event."""
        self._add("navigation", f"Navigated to {url}", {"url": url})

    def log_row_start(self, index: int, row: Mapping[str, str]) -> None:
        self._current_row = index
        self._add("row", f"Row {index + 1} started", {"values": dict(row)}, row=index)

    def log_step(self, row: int, step: "Step", outcome: "StepOutcome") -> None:
        """Log a settled step outcome."""
        label = step.label or step.action.value
        message = f"{step.action.value} '{label}': {outcome.status.value}"
        if outcome.strategy:
            message += f" via {outcome.strategy}"
        data = {
            "step_id": step.id,
            "status": outcome.status.value,
            "value": outcome.value,
            "strategy": outcome.strategy,
            "duration_ms": round(outcome.duration_ms, 1),
        }
        if outcome.failure:
            data["failure"] = outcome.failure.to_dict()
        self._add("step", message, data, row=row)
        if outcome.failure:
            logger.debug("Row %d step %s failed: %s", row + 1, step.id, outcome.failure)

    def log_row_result(self, row_result: "RowResult") -> None:
        message = f"Row {row_result.row_index + 1}: {row_result.status.value}"
        data = {"status": row_result.status.value}
        if row_result.failure:
            data["failure"] = row_result.failure.message
        self._add("row_result", message, data, row=row_result.row_index)

    def log_info(self, message: str) -> None:
        """Log a general information message."""
        self._add("info", message)

    def log_warning(self, message: str) -> None:
        """Log a warning."""
        logger.warning(message)
        self._add("warning", message)

    def log_error(self, message: str, exception: Optional[Exception] = None) -> None:
        """Log an error."""
        logger.error(message)
        self._add("error", message, {"exception": str(exception) if exception else None})

    def capture_screenshot(self, name: str, driver=None) -> Optional[str]:
        """
        Capture a screenshot and attach it to the last entry.

        Returns:
            Path to saved screenshot, or None when it could not be taken
        """
        if driver is None:
            return None
        path = os.path.join(self.screenshots_dir, f"{name}.png")
        try:
            driver.save_screenshot(path)
        except WebDriverException as e:
            logger.debug("Screenshot %s failed: %s", name, e.msg)
            return None
        if self.entries:
            self.entries[-1].screenshot_path = path
        return path

    def summary(self) -> Dict[str, int]:
        steps = [e for e in self.entries if e.event_type == "step"]
        rows = [e for e in self.entries if e.event_type == "row_result"]
        counts = {"rows": len(rows), "passed": 0, "failed": 0, "skipped": 0}
        for entry in steps:
            status = entry.data.get("status")
            if status in counts:
                counts[status] += 1
        return counts

    def generate_report(self) -> str:
        """
        Write ``report.html`` and ``flight_record.json`` into the run directory.

        Returns:
            Path to the generated report
        """
        self.metadata["end_time"] = datetime.now().isoformat()
        self.metadata["summary"] = self.summary()

        report_path = os.path.join(self.run_dir, "report.html")
        with open(report_path, "w", encoding="utf-8") as f:
            f.write(self._build_html_report())

        json_path = os.path.join(self.run_dir, "flight_record.json")
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump({
                "metadata": self.metadata,
                "entries": [e.to_dict() for e in self.entries],
            }, f, indent=2, default=str)

        return report_path

    def _group_by_row(self) -> Dict[int, List[LogEntry]]:
        groups: Dict[int, List[LogEntry]] = {}
        for entry in self.entries:
            groups.setdefault(entry.row, []).append(entry)
        return groups

    def _entry_html(self, entry: LogEntry) -> str:
        screenshot_html = ""
        if entry.screenshot_path:
            try:
                rel_path = os.path.relpath(entry.screenshot_path, self.run_dir)
            except ValueError:
                rel_path = entry.screenshot_path
            screenshot_html = f'<a href="{html.escape(rel_path)}"><img src="{html.escape(rel_path)}" alt="screenshot"></a>'

        duration = entry.data.get("duration_ms") if entry.event_type == "step" else None
        return f"""
                <tr class="{self._get_status_class(entry)}">
                    <td class="icon">{self._get_event_icon(entry.event_type)}</td>
                    <td class="time">{entry.timestamp.strftime('%H:%M:%S')}</td>
                    <td>{html.escape(entry.message)}{self._format_data(entry.data)}{screenshot_html}</td>
                    <td class="ms">{f'{duration:.0f} ms' if duration is not None else ''}</td>
                </tr>"""

    def _build_html_report(self) -> str:
        """Build HTML report content: run events first, then one section per row."""
        counts = self.metadata.get("summary") or self.summary()
        groups = self._group_by_row()

        sections = []
        for row, entries in sorted(groups.items()):
            outcome = next((e for e in entries if e.event_type == "row_result"), None)
            title = "Run" if row < 0 else f"Row {row + 1}"
            badge = ""
            if outcome is not None:
                status = outcome.data.get("status", "")
                badge = f'<span class="badge {self._get_status_class(outcome)}">{html.escape(status)}</span>'
            rows_html = "".join(self._entry_html(e) for e in entries)
            sections.append(f"""
        <section>
            <h2>{title} {badge}</h2>
            <table>{rows_html}
            </table>
        </section>""")

        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Ditto Run - {html.escape(self.run_name)}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; background: #f6f8fa; color: #24292f; margin: 0; padding: 1.5rem; }}
        main {{ max-width: 1100px; margin: 0 auto; }}
        header {{ border-bottom: 2px solid #d0d7de; margin-bottom: 1rem; }}
        header h1 {{ margin: 0 0 .25rem; font-size: 1.6rem; }}
        header p {{ margin: .1rem 0; color: #57606a; }}
        .counts {{ display: flex; gap: .75rem; margin: 1rem 0; }}
        .count {{ flex: 1; background: #fff; border: 1px solid #d0d7de; border-radius: 6px; padding: .75rem; }}
        .count b {{ display: block; font-size: 1.5rem; }}
        section {{ background: #fff; border: 1px solid #d0d7de; border-radius: 6px; margin-bottom: 1rem; padding: .5rem 1rem; }}
        section h2 {{ font-size: 1.1rem; }}
        table {{ width: 100%; border-collapse: collapse; }}
        td {{ padding: .35rem .5rem; border-top: 1px solid #eaeef2; vertical-align: top; }}
        td.icon {{ width: 2rem; }}
        td.time, td.ms {{ width: 5rem; color: #57606a; font-size: .85rem; white-space: nowrap; }}
        pre {{ margin: .35rem 0 0; background: #f6f8fa; padding: .4rem; font-size: .8rem; overflow-x: auto; }}
        img {{ display: block; max-width: 280px; margin-top: .35rem; border: 1px solid #d0d7de; }}
        .success {{ color: #1a7f37; }}
        .warning {{ color: #9a6700; }}
        .error {{ color: #cf222e; }}
        .badge {{ font-size: .8rem; border: 1px solid currentColor; border-radius: 1rem; padding: 0 .5rem; }}
    </style>
</head>
<body>
<main>
    <header>
        <h1>Ditto Run Report</h1>
        <p>Project: {html.escape(str(self.metadata.get('project_id') or 'N/A'))} · Run: {html.escape(self.run_name)}</p>
        <p>{html.escape(str(self.metadata.get('url') or 'N/A'))}</p>
    </header>
    <div class="counts">
        <div class="count"><b>{counts.get('rows', 0)}</b>rows</div>
        <div class="count success"><b>{counts.get('passed', 0)}</b>steps passed</div>
        <div class="count error"><b>{counts.get('failed', 0)}</b>steps failed</div>
        <div class="count warning"><b>{counts.get('skipped', 0)}</b>steps skipped</div>
    </div>
    {''.join(sections)}
</main>
</body>
</html>"""

    def _get_event_icon(self, event_type: str) -> str:
        """Get emoji icon for event type."""
        icons = {
            "run": "🚀",
            "navigation": "🧭",
            "row": "📄",
            "step": "⚡",
            "row_result": "🏁",
            "warning": "⚠️",
            "error": "❌",
            "info": "ℹ️",
        }
        return icons.get(event_type, "📝")

    def _get_status_class(self, entry: LogEntry) -> str:
        """Get CSS class based on entry status."""
        if entry.event_type == "error":
            return "error"
        if entry.event_type == "warning":
            return "warning"
        if entry.event_type in ("step", "row_result"):
            status = entry.data.get("status")
            if status == "passed":
                return "success"
            if status in ("failed", "cancelled"):
                return "error"
            if status in ("skipped", "not_run"):
                return "warning"
        return ""

    def _format_data(self, data: Dict[str, Any]) -> str:
        """Render event data as escaped JSON, minus what the row already shows."""
        shown = {k: v for k, v in data.items()
                 if k not in ("status", "duration_ms") and v is not None and len(str(v)) < 400}
        if not shown:
            return ""
        return f"<pre>{html.escape(json.dumps(shown, indent=2, default=str))}</pre>"
