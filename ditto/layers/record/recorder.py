"""
Recording State Machine - DOM events in, Steps out.

While recording, a listener lives in the page (top document, same-origin
frames and hooked closed shadow roots). It captures evidence for every
qualifying event the moment it happens and queues it in the top window,
mirrored to ``sessionStorage`` so a navigation does not lose it. ``poll()``
drains that queue, re-installing the listener on a fresh document, and
turns each event into a Step.

States are ``IDLE -> RECORDING -> IDLE``. Every event yields one Step; no
de-duplication happens here.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, TYPE_CHECKING
import logging

from selenium.common.exceptions import JavascriptException, TimeoutException, WebDriverException

from ditto.core.errors import InvalidStepError
from ditto.core.models import ActionKind, Sequence, Step, new_step_id
from ditto.core.session import CancellationToken, RecordingSession, SessionRegistry
from ditto.layers.sense.bundle import ElementBundle
from ditto.layers.sense.locator_generator import CAPTURE_LIBRARY, capture_from_evidence

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver

logger = logging.getLogger(__name__)

QUEUE_KEY = "__dittoQueue"

LISTENER_LIBRARY = CAPTURE_LIBRARY + r"""
var KEY = '__dittoQueue';
var CLICKABLE = 'button, a, input, select, textarea, [role], [onclick]';

function install() {
    var rec = {queue: [], targets: []};
    try {
        var saved = window.sessionStorage.getItem(KEY);
        if (saved) { rec.queue = JSON.parse(saved) || []; }
    } catch (e) { rec.queue = []; }

    rec.persist = function () {
        try { window.sessionStorage.setItem(KEY, JSON.stringify(rec.queue)); } catch (e) { /* storage full or denied */ }
    };
    rec.drain = function () {
        var out = rec.queue;
        rec.queue = [];
        rec.persist();
        return out;
    };

    rec.interactive = function (el) {
        var tag = el.tagName.toLowerCase();
        if (['button', 'input', 'a', 'select', 'textarea'].indexOf(tag) !== -1) { return true; }
        if (el.hasAttribute('role') || el.onclick !== null || el.hasAttribute('onclick')) { return true; }
        var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
        return view.getComputedStyle(el).cursor === 'pointer';
    };

    rec.targetOf = function (event) {
        var path = event.composedPath ? event.composedPath() : [event.target];
        for (var i = 0; i < path.length; i++) {
            if (path[i] && path[i].nodeType === 1) {
                var el = path[i];
                var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
                if (view.SVGElement && el instanceof view.SVGElement) {
                    var svgOwner = el.closest('svg');
                    el = (svgOwner && svgOwner.parentElement && svgOwner.parentElement.closest(CLICKABLE)) ||
                        (svgOwner && svgOwner.parentElement) || el;
                }
                return el;
            }
        }
        return null;
    };

    rec.fieldValue = function (el) {
        var tag = el.tagName.toLowerCase();
        if (tag === 'select') {
            var opt = el.selectedOptions && el.selectedOptions[0];
            return (opt && opt.textContent.trim()) || el.value || '';
        }
        if (tag === 'input' && (el.type === 'checkbox' || el.type === 'radio')) { return String(el.checked); }
        if (tag === 'input' || tag === 'textarea') { return el.value || ''; }
        var editable = el.closest('[contenteditable=""], [contenteditable="true"]');
        if (editable) { return (editable.innerText || '').trim(); }
        return (el.textContent || '').trim();
    };

    rec.emit = function (kind, el, event, value) {
        var r = D.safe(function () { return el.getBoundingClientRect(); }, null);
        rec.queue.push({
            kind: kind,
            evidence: D.capture(el),
            value: value,
            x: (event && event.clientX !== undefined) ? event.clientX : (r ? r.left + r.width / 2 : null),
            y: (event && event.clientY !== undefined) ? event.clientY : (r ? r.top + r.height / 2 : null),
            url: window.location.href,
            ts: Date.now()
        });
        rec.persist();
    };

    rec.handle = function (event, fromClosedRoot) {
        if (!event.isTrusted) { return; }
        if (event.__dittoHandled) { return; }
        var el = rec.targetOf(event);
        if (!el) { return; }
        if (!fromClosedRoot && el.__dittoShadowRoot) {
            // Retargeted from a closed root; its own listener reports the real target.
            setTimeout(function () { if (!event.__dittoHandled) { rec.dispatch(event, el); } }, 0);
            return;
        }
        event.__dittoHandled = true;
        rec.dispatch(event, el);
    };

    rec.dispatch = function (event, el) {
        if (event.type === 'mousedown') {
            if (!rec.interactive(el)) {
                el = el.closest(CLICKABLE);
                if (!el) { return; }
            }
            rec.emit('click', el, event, null);
        } else if (event.type === 'input') {
            rec.emit('input', el, null, rec.fieldValue(el));
        } else if (event.type === 'keydown' && event.key === 'Enter') {
            var tag = el.tagName.toLowerCase();
            var value = (tag === 'input' || tag === 'textarea') ? (el.value || '') : '';
            rec.emit('enter', el, null, value);
        }
    };

    rec.onDoc = function (event) { rec.handle(event, false); };
    rec.onRoot = function (event) { rec.handle(event, true); };

    rec.attach = function (target, closedRoot) {
        if (target.__dittoListening) { return; }
        var fn = closedRoot ? rec.onRoot : rec.onDoc;
        ['mousedown', 'input', 'keydown'].forEach(function (type) { target.addEventListener(type, fn, true); });
        Object.defineProperty(target, '__dittoListening', {value: fn, configurable: true});
        rec.targets.push(target);
    };

    rec.scan = function (doc) {
        rec.attach(doc, false);
        var win = doc.defaultView;
        var roots = (win && win.__dittoClosedRoots) || [];
        for (var i = 0; i < roots.length; i++) { rec.attach(roots[i], true); }
        var frames = doc.querySelectorAll('iframe, frame');
        for (var f = 0; f < frames.length; f++) {
            try {
                var inner = frames[f].contentDocument;
                if (inner && inner.documentElement) { rec.scan(inner); }
            } catch (e) { /* cross-origin frame */ }
        }
    };

    rec.detach = function () {
        rec.targets.forEach(function (target) {
            var fn = target.__dittoListening;
            if (!fn) { return; }
            ['mousedown', 'input', 'keydown'].forEach(function (type) { target.removeEventListener(type, fn, true); });
            delete target.__dittoListening;
        });
        rec.targets = [];
    };

    Object.defineProperty(window, '__dittoRecorder', {value: rec, configurable: true});
    return rec;
}
"""

POLL_SCRIPT = LISTENER_LIBRARY + r"""
var rec = window.__dittoRecorder || install();
rec.scan(document);
return rec.drain();
"""

RESET_SCRIPT = r"""
try { window.sessionStorage.removeItem(arguments[0]); } catch (e) { /* storage denied */ }
if (window.__dittoRecorder) { window.__dittoRecorder.queue = []; }
return true;
"""

DETACH_SCRIPT = r"""
var rec = window.__dittoRecorder;
var left = [];
if (rec) {
    left = rec.drain();
    rec.detach();
    delete window.__dittoRecorder;
}
try { window.sessionStorage.removeItem(arguments[0]); } catch (e) { /* storage denied */ }
return left;
"""

EVENT_KINDS: Dict[str, ActionKind] = {
    "click": ActionKind.CLICK,
    "mousedown": ActionKind.CLICK,
    "pointerdown": ActionKind.CLICK,
    "input": ActionKind.TEXT_ENTRY,
    "change": ActionKind.TEXT_ENTRY,
    "enter": ActionKind.KEY_SUBMIT,
}

SUBMIT_LABEL = "submit"


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


def target_key(bundle: ElementBundle) -> tuple:
    """Identity of the element a bundle was captured from, for label reuse and merging."""
    return (bundle.frame_chain, bundle.shadow_hosts, bundle.xpath or bundle.describe())


class RecordingStateMachine:
    """
    Turns page events into Steps for one project.

    Example:
        >>> machine = RecordingStateMachine(driver, "signup", on_step=collector)
        >>> machine.start()
        >>> machine.poll()        # call periodically
        >>> machine.stop()
    """

    def __init__(
        self,
        driver: "WebDriver",
        project_id: str,
        on_step: Optional[Callable[[Step], None]] = None,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = new_step_id,
    ):
        self.driver = driver
        self.project_id = project_id
        self.on_step = on_step
        self.registry = registry or SessionRegistry()
        self.clock = clock
        self.id_factory = id_factory
        self.session: Optional[RecordingSession] = None
        self.rejected = 0

    @property
    def state(self) -> RecorderState:
        return RecorderState.RECORDING if self.session is not None else RecorderState.IDLE

    def start(self) -> RecordingSession:
        """Enter RECORDING: open a session and attach the page listener."""
        if self.session is not None:
            raise RuntimeError(f"Already recording {self.project_id}")
        self.session = self.registry.start_recording(self.project_id, context=self.driver)
        self.rejected = 0
        try:
            self.driver.switch_to.default_content()
            self.driver.execute_script(RESET_SCRIPT, QUEUE_KEY)
            self.driver.execute_script(POLL_SCRIPT)
        except WebDriverException as e:
            logger.warning("Listener not attached yet: %s", e.msg)
        logger.info("Recording started for %s", self.project_id)
        return self.session

    def stop(self) -> List[Step]:
        """Drain pending events, detach the listener and return to IDLE."""
        if self.session is None:
            return []
        steps: List[Step] = []
        try:
            self.driver.switch_to.default_content()
            steps = self._to_steps(self.driver.execute_script(DETACH_SCRIPT, QUEUE_KEY) or [])
        except WebDriverException as e:
            logger.warning("Listener detach failed: %s", e.msg)
        finally:
            self.registry.stop_recording(self.project_id)
            self.session = None
        logger.info("Recording stopped for %s", self.project_id)
        return steps

    def poll(self) -> List[Step]:
        """Drain queued page events into Steps. Re-attaches after navigation."""
        if self.session is None:
            return []
        try:
            self.driver.switch_to.default_content()
            raw_events = self.driver.execute_script(POLL_SCRIPT) or []
        except (JavascriptException, TimeoutException) as e:
            logger.debug("Poll failed, retrying next tick: %s", e.msg)
            return []
        except WebDriverException as e:
            # Mid-navigation; the queue survives in sessionStorage.
            logger.debug("Page unavailable during poll: %s", e.msg)
            return []
        return self._to_steps(raw_events)

    def record(self, token: CancellationToken, interval: float = 0.25) -> None:
        """Poll until ``token`` is cancelled, then stop."""
        if self.session is None:
            self.start()
        try:
            while not token.cancelled:
                self.poll()
                token.wait(interval)
        finally:
            self.stop()

    def _to_steps(self, raw_events: List[Mapping[str, Any]]) -> List[Step]:
        steps = []
        for raw in raw_events:
            step = self.handle_event(raw)
            if step is not None:
                steps.append(step)
        return steps

    def handle_event(self, raw: Mapping[str, Any]) -> Optional[Step]:
        """
        Build and emit a Step for one raw event.

        Returns None when the event kind is unknown or no bundle could be built.
        """
        if self.session is None:
            return None
        action = EVENT_KINDS.get(str(raw.get("kind") or "").lower())
        if action is None:
            logger.debug("Ignoring event kind %r", raw.get("kind"))
            return None

        capture = capture_from_evidence(raw.get("evidence"))
        if not capture.success:
            self.rejected += 1
            logger.debug("Dropped %s event: %s", action.value, capture.failure)
            return None

        if action is ActionKind.KEY_SUBMIT:
            label = self.session.unique_label(SUBMIT_LABEL)
        else:
            label = self.session.unique_label(capture.label or action.value, target_key(capture.bundle))

        value = raw.get("value")
        if action is ActionKind.TEXT_ENTRY:
            value = "" if value is None else str(value)
        elif action is ActionKind.CLICK:
            value = None

        try:
            step = Step(
                id=self.id_factory(),
                action=action,
                bundle=capture.bundle,
                label=label,
                value=value,
                x=raw.get("x"),
                y=raw.get("y"),
                timestamp=self.clock(),
                page_url=raw.get("url") or "",
            )
        except InvalidStepError as e:
            logger.debug("Dropped %s event: %s", action.value, e)
            return None

        logger.debug("Captured %s on %s as '%s'", action.value, capture.bundle.describe(), label)
        if self.on_step:
            self.on_step(step)
        return step


class StepCollector:
    """
    Recording surface that builds a Sequence from emitted Steps.

    Consecutive click / text-entry Steps on the same element are folded into
    one, keeping the first Step's id and label. Submit Steps always append.
    """

    def __init__(self, sequence: Sequence, on_change: Optional[Callable[[Step, bool], None]] = None):
        self.sequence = sequence
        self.on_change = on_change

    def __call__(self, step: Step) -> Step:
        return self.add(step)

    def add(self, step: Step) -> Step:
        last = self.sequence.steps[-1] if self.sequence.steps else None
        if last is not None and self._same_field(last, step):
            if step.action is ActionKind.CLICK and last.action is ActionKind.TEXT_ENTRY:
                merged = last
            else:
                merged = Step(
                    id=last.id,
                    action=step.action,
                    bundle=step.bundle,
                    label=last.label,
                    value=step.value,
                    x=step.x if step.x is not None else last.x,
                    y=step.y if step.y is not None else last.y,
                    delay_seconds=last.delay_seconds,
                    timestamp=step.timestamp,
                    page_url=step.page_url or last.page_url,
                )
                self.sequence.steps[-1] = merged
            self._changed(merged, False)
            return merged

        self.sequence.add_step(step)
        self._changed(step, True)
        return step

    @staticmethod
    def _same_field(last: Step, step: Step) -> bool:
        if ActionKind.KEY_SUBMIT in (last.action, step.action):
            return False
        return target_key(last.bundle) == target_key(step.bundle)

    def _changed(self, step: Step, appended: bool) -> None:
        if self.on_change:
            self.on_change(step, appended)
