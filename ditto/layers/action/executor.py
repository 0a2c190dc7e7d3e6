"""
Step Executor - framework-visible interactions.

Clicks are dispatched as the full pointer gesture and keys as a full
keydown/keypress/keyup sequence. Text goes through the native value setter
of the element's own prototype followed by ``input`` and ``change`` events,
so React, Vue and Angular bindings observe it. Every call returns an
``ActionResult``; driver exceptions never escape.
"""

from dataclasses import dataclass
from typing import Any, Optional, TYPE_CHECKING
import logging
import time

from selenium.common.exceptions import (
    JavascriptException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.support.ui import WebDriverWait

from ditto.core.errors import ActionFailure, ActionFailureReason
from ditto.core.models import ActionKind, Step
from ditto.core.session import CancellationToken

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver
    from selenium.webdriver.remote.webelement import WebElement

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result of an action execution."""
    success: bool
    action: str
    target: str
    duration_ms: float
    step_id: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[ActionFailure] = None
    metadata: Optional[dict] = None


class StepExecutor:
    """
    Apply a step's action to an already located element.

    Example:
        >>> executor = StepExecutor(driver)
        >>> result = executor.execute(step, element, value="a@b.com")
        >>> result.success
        True
    """

    SCROLL_SETTLE_SECONDS = 0.3

    def __init__(self, driver: "WebDriver", settle_timeout: float = 5,
                 token: Optional[CancellationToken] = None):
        """
        Args:
            driver: Selenium WebDriver
            settle_timeout: How long to wait for ``readyState`` after a click or submit
            token: Run cancellation token; short settle pauses wait on it
        """
        self.driver = driver
        self.settle_timeout = settle_timeout
        self.token = token or CancellationToken()

    def execute(self, step: Step, element: "WebElement", value: Optional[str] = None) -> ActionResult:
        """
        Run ``step`` against ``element``.

        ``value`` overrides the step's captured payload (row substitution).
        """
        payload = step.value if value is None else value
        if step.action is ActionKind.CLICK:
            result = self.click(element, target=step.label)
        elif step.action is ActionKind.TEXT_ENTRY:
            result = self.type_text(element, payload or "", target=step.label)
        else:
            result = self.submit(element, payload, target=step.label)
        result.step_id = step.id
        if result.failure:
            result.failure.step_id = step.id
        return result

    def click(self, element: "WebElement", target: str = "") -> ActionResult:
        """Hover, press, release and click, as a user would."""
        return self._run("click", target, element, self._get_click_script(), settle=True)

    def type_text(self, element: "WebElement", text: str, target: str = "") -> ActionResult:
        """Set the value through the native setter and notify listeners."""
        return self._run("input", target, element, self._get_type_script(), text)

    def submit(self, element: "WebElement", value: Optional[str] = None, target: str = "") -> ActionResult:
        """Press Enter on the element, filling ``value`` first when given."""
        return self._run("enter", target, element, self._get_submit_script(), value, settle=True)

    def _run(self, action: str, target: str, element: "WebElement", script: str, *args: Any,
             settle: bool = False) -> ActionResult:
        start_time = time.time()

        def result(success: bool, failure: Optional[ActionFailure] = None, **metadata) -> ActionResult:
            return ActionResult(
                success=success,
                action=action,
                target=target,
                duration_ms=(time.time() - start_time) * 1000,
                error=failure.message if failure else None,
                failure=failure,
                metadata=metadata or None,
            )

        try:
            self._scroll_into_view(element)
            outcome = self.driver.execute_script(script, element, *args)
        except StaleElementReferenceException as e:
            return result(False, ActionFailure(f"Element went stale: {e.msg}", "execute", ActionFailureReason.STALE))
        except TimeoutException as e:
            return result(False, ActionFailure(f"Action timed out: {e.msg}", "execute", ActionFailureReason.TIMEOUT))
        except (JavascriptException, WebDriverException) as e:
            return result(False, ActionFailure(f"Action threw: {e.msg}", "execute", ActionFailureReason.THREW))

        if isinstance(outcome, dict) and not outcome.get("ok", False):
            reason = outcome.get("reason") or "rejected by page"
            logger.warning("%s on %s rejected: %s", action, target or "element", reason)
            return result(False, ActionFailure(reason, "execute", ActionFailureReason.REJECTED))

        if settle:
            self._wait_for_stability()
        return result(True)

    def _scroll_into_view(self, element: "WebElement") -> None:
        """Scroll element into the viewport when it is outside it."""
        scrolled = self.driver.execute_script("""
            var el = arguments[0];
            var rect = el.getBoundingClientRect();
            var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
            var inView = rect.top >= 0 && rect.left >= 0 &&
                rect.bottom <= view.innerHeight && rect.right <= view.innerWidth;
            if (!inView) {
                el.scrollIntoView({behavior: 'smooth', block: 'center'});
            }
            return !inView;
        """, element)
        if scrolled:
            self.token.wait(self.SCROLL_SETTLE_SECONDS)

    def _wait_for_stability(self) -> None:
        """Wait for the document to finish loading after a click or submit."""
        try:
            WebDriverWait(self.driver, self.settle_timeout).until(
                lambda d: d.execute_script("return document.readyState") == "complete"
            )
        except TimeoutException:
            logger.debug("Page did not reach readyState=complete within %ss", self.settle_timeout)
        except WebDriverException as e:
            # A navigation can tear down the frame the driver is in.
            logger.debug("Stability check interrupted: %s", e.msg)

    def _get_click_script(self) -> str:
        return r"""
            var el = arguments[0];
            var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
            var r = el.getBoundingClientRect();
            var base = {
                bubbles: true, cancelable: true, composed: true, view: view,
                clientX: r.left + r.width / 2, clientY: r.top + r.height / 2, button: 0
            };
            var Pointer = view.PointerEvent || view.MouseEvent;
            function fire(Ctor, type, extra) {
                var init = Object.assign({}, base, extra || {});
                if (Ctor === view.PointerEvent) { init.pointerType = 'mouse'; init.isPrimary = true; }
                el.dispatchEvent(new Ctor(type, init));
            }
            fire(Pointer, 'pointerover');
            fire(view.MouseEvent, 'mouseover');
            fire(view.MouseEvent, 'mousemove');
            fire(Pointer, 'pointerdown', {buttons: 1});
            fire(view.MouseEvent, 'mousedown', {buttons: 1});
            if (typeof el.focus === 'function') { el.focus(); }
            fire(Pointer, 'pointerup');
            fire(view.MouseEvent, 'mouseup');
            fire(view.MouseEvent, 'click', {detail: 1});
            return {ok: true};
        """

    def _get_type_script(self) -> str:
        return r"""
            var el = arguments[0], value = String(arguments[1]);
            var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
            var tag = el.tagName.toLowerCase();

            function setNative(proto, v) {
                var desc = Object.getOwnPropertyDescriptor(proto, 'value');
                desc.set.call(el, v);
            }

            if (tag === 'select') {
                var want = value.trim().toLowerCase(), hit = null, i;
                for (i = 0; i < el.options.length && !hit; i++) {
                    if (el.options[i].value === value) { hit = el.options[i]; }
                }
                for (i = 0; i < el.options.length && !hit; i++) {
                    if ((el.options[i].text || '').trim().toLowerCase() === want) { hit = el.options[i]; }
                }
                if (!hit) { return {ok: false, reason: 'no option matches "' + value + '"'}; }
                setNative(view.HTMLSelectElement.prototype, hit.value);
            } else if (el instanceof view.HTMLInputElement && (el.type === 'checkbox' || el.type === 'radio')) {
                var checked = ['true', 'on', 'yes', '1'].indexOf(value.trim().toLowerCase()) !== -1;
                if (el.checked !== checked) { el.click(); }
                return {ok: true};
            } else if (el instanceof view.HTMLInputElement || el instanceof view.HTMLTextAreaElement) {
                if (el.disabled || el.readOnly) { return {ok: false, reason: 'field is disabled or read-only'}; }
                el.focus();
                var proto = (tag === 'textarea') ? view.HTMLTextAreaElement.prototype : view.HTMLInputElement.prototype;
                setNative(proto, value);
            } else if (el.isContentEditable) {
                el.focus();
                el.textContent = value;
            } else {
                return {ok: false, reason: '<' + tag + '> does not accept text'};
            }

            var Input = view.InputEvent || view.Event;
            el.dispatchEvent(new Input('input', {bubbles: true, composed: true, inputType: 'insertText', data: value}));
            el.dispatchEvent(new view.Event('change', {bubbles: true}));
            return {ok: true};
        """

    def _get_submit_script(self) -> str:
        return r"""
            var el = arguments[0], value = arguments[1];
            var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
            var tag = el.tagName.toLowerCase();
            var type = (el.getAttribute('type') || '').toLowerCase();
            var isField = el instanceof view.HTMLInputElement || el instanceof view.HTMLTextAreaElement;

            if (value !== null && value !== undefined && value !== '' && isField &&
                    type !== 'submit' && type !== 'button') {
                var proto = (tag === 'textarea') ? view.HTMLTextAreaElement.prototype : view.HTMLInputElement.prototype;
                Object.getOwnPropertyDescriptor(proto, 'value').set.call(el, String(value));
                el.dispatchEvent(new (view.InputEvent || view.Event)('input', {bubbles: true, composed: true}));
            }
            if (typeof el.focus === 'function') { el.focus(); }

            var allowed = true;
            ['keydown', 'keypress', 'keyup'].forEach(function (t) {
                var ev = new view.KeyboardEvent(t, {
                    key: 'Enter', code: 'Enter', keyCode: 13, which: 13,
                    bubbles: true, cancelable: true, composed: true
                });
                Object.defineProperty(ev, 'keyCode', {get: function () { return 13; }});
                Object.defineProperty(ev, 'which', {get: function () { return 13; }});
                if (!el.dispatchEvent(ev) && t === 'keydown') { allowed = false; }
            });

            if (tag === 'button' || (tag === 'input' && (type === 'submit' || type === 'button'))) {
                el.click();
            } else if (allowed && tag === 'input' && el.form && typeof el.form.requestSubmit === 'function') {
                el.form.requestSubmit();
            }
            return {ok: true};
        """
