"""
Locator Generator - capture-time evidence for one element.

A single read-only script pass collects every descriptor the locator chain
can later use (structural path, attributes, text, rectangle), the
frame / shadow context, and raw label evidence. Python then turns that
evidence into an ``ElementBundle`` and a label.

The same capture library is embedded in the recording listener, so events
captured in the page and elements captured from Python produce identical
bundles.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING
import logging

from selenium.common.exceptions import (
    JavascriptException,
    StaleElementReferenceException,
    WebDriverException,
)

from ditto.core.errors import CaptureFailure
from ditto.layers.sense.bundle import BoundingBox, ElementBundle
from ditto.layers.sense.context_tracker import PRELUDE, parse_context
from ditto.layers.sense.labels import derive_label_with_source

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver
    from selenium.webdriver.remote.webelement import WebElement

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 200


CAPTURE_LIBRARY = PRELUDE + r"""
D.safe = function (fn, fallback) {
    try { var v = fn(); return (v === undefined || v === null) ? fallback : v; } catch (e) { return fallback; }
};

D.text = function (node) {
    if (!node) { return ''; }
    return (node.innerText || node.textContent || '').replace(/\s+/g, ' ').trim().slice(0, 200);
};

D.ownText = function (label) {
    var copy = label.cloneNode(true);
    var controls = copy.querySelectorAll('input, select, textarea, button');
    for (var i = 0; i < controls.length; i++) { controls[i].parentNode.removeChild(controls[i]); }
    return (copy.textContent || '').replace(/\s+/g, ' ').trim().slice(0, 200);
};

D.originalSelect = function (el) {
    if (el.tagName.toLowerCase() === 'select') { return el; }
    var container = el.closest('.select2-container, .select2');
    if (container) {
        var prev = container.previousElementSibling;
        if (prev && prev.tagName.toLowerCase() === 'select') { return prev; }
        var parentSelect = container.parentElement && container.parentElement.querySelector('select');
        if (parentSelect) { return parentSelect; }
    }
    return null;
};

D.labelEvidence = function (el) {
    var root = el.getRootNode ? el.getRootNode() : document;
    var tag = el.tagName.toLowerCase();
    var original = D.originalSelect(el) || el;
    var ev = {
        tag: tag,
        type: (el.getAttribute('type') || '').toLowerCase(),
        name: el.getAttribute('name') || '',
        placeholder: el.getAttribute('placeholder') || '',
        ariaLabel: el.getAttribute('aria-label') || '',
        dataRole: el.getAttribute('data-role') || '',
        value: (tag === 'input') ? (el.value || '') : '',
        innerText: D.visibleText(el)
    };

    ev.labelFor = D.safe(function () {
        if (!original.id) { return ''; }
        var sel = 'label[for="' + CSS.escape(original.id) + '"]';
        return D.text(root.querySelector(sel) || document.querySelector(sel));
    }, '');

    ev.wrappingLabel = D.safe(function () {
        var wrap = original.closest('label');
        return wrap ? D.ownText(wrap) : '';
    }, '');

    ev.labelledBy = D.safe(function () {
        var ids = (original.getAttribute('aria-labelledby') || '').split(/\s+/);
        var parts = [];
        for (var i = 0; i < ids.length; i++) {
            if (!ids[i]) { continue; }
            var ref = (root.getElementById ? root.getElementById(ids[i]) : null) || document.getElementById(ids[i]);
            if (ref) { parts.push(D.text(ref)); }
        }
        return parts;
    }, []);

    ev.formEntityLabel = D.safe(function () {
        var entity = original.closest('.form_entity');
        return entity ? D.text(entity.querySelector('.form_label')) : '';
    }, '');

    ev.questionHeading = D.safe(function () {
        var item = original.closest('[role="listitem"]');
        return item ? D.text(item.querySelector('[role="heading"]')) : '';
    }, '');

    ev.columnHeader = D.safe(function () {
        var row = original.closest('.row');
        var body = row && row.closest('.modal-body');
        if (!body) { return ''; }
        var header = body.querySelector('.row');
        if (!header || header === row) { return ''; }
        var col = original.closest('.col-md-3');
        var cols = Array.prototype.slice.call(row.querySelectorAll('.col-md-3'));
        var heads = header.querySelectorAll('.col-md-3');
        var idx = cols.indexOf(col);
        return (idx >= 0 && heads[idx]) ? D.text(heads[idx]) : '';
    }, '');

    ev.previousColumn = D.safe(function () {
        var row = original.closest('.row');
        if (!row) { return ''; }
        var cols = Array.prototype.slice.call(row.children).filter(function (c) {
            return (c.className || '').toString().indexOf('col-md-') !== -1;
        });
        for (var i = 1; i < cols.length; i++) {
            if (cols[i].contains(original)) {
                var prev = cols[i - 1].classList;
                if (prev.contains('col-md-2') || prev.contains('col-md-3')) { return D.text(cols[i - 1]); }
            }
        }
        return '';
    }, '');

    ev.containerLabel = D.safe(function () {
        var selector = '.form_label, .field-label, .label, .question, .question-text, [role="heading"]';
        var node = original.parentElement;
        for (var depth = 0; node && depth < 4; depth++) {
            var found = node.querySelector(selector);
            if (found && !found.contains(original)) { return D.text(found); }
            node = node.parentElement;
        }
        return '';
    }, '');

    ev.siblingText = D.safe(function () {
        var sib = original.previousElementSibling;
        for (var i = 0; sib && i < 3; i++) {
            var t = D.text(sib);
            if (t && !sib.querySelector('input, select, textarea')) { return t; }
            sib = sib.previousElementSibling;
        }
        return '';
    }, '');

    ev.previousCell = D.safe(function () {
        var cell = original.closest('td');
        return (cell && cell.previousElementSibling) ? D.text(cell.previousElementSibling) : '';
    }, '');

    ev.select2Label = D.safe(function () {
        if (original === el || original.tagName.toLowerCase() !== 'select') { return ''; }
        if (original.getAttribute('placeholder')) { return original.getAttribute('placeholder'); }
        var holder = original.parentElement && original.parentElement.closest('[data-select2-id]');
        var lbl = holder && (holder.querySelector('.label') || (holder.parentElement && holder.parentElement.querySelector('.label')));
        return D.text(lbl);
    }, '');

    ev.dropdownLabel = D.safe(function () {
        var dd = el.closest('.dropdown, [role="combobox"]');
        return dd ? D.text(dd.querySelector('.dropdown-label, label')) : '';
    }, '');

    return ev;
};

D.dataAttrs = function (el) {
    var out = {};
    var skip = /^(v-|reactid|select2-id)/;
    for (var i = 0; i < el.attributes.length; i++) {
        var a = el.attributes[i];
        if (a.name.indexOf('data-') !== 0) { continue; }
        var key = a.name.slice(5);
        if (!key || skip.test(key) || !a.value || a.value.length > 100) { continue; }
        out[key] = a.value;
    }
    return out;
};

D.capture = function (el) {
    if (!el || el.nodeType !== 1) { return null; }
    return {
        tag: el.tagName.toLowerCase(),
        path: D.safe(function () { return D.segmentPath(el); }, ''),
        id: el.id || '',
        name: el.getAttribute('name') || '',
        ariaLabel: el.getAttribute('aria-label') || '',
        placeholder: el.getAttribute('placeholder') || '',
        className: D.safe(function () { return (el.getAttribute('class') || '').replace(/\s+/g, ' ').trim(); }, ''),
        dataAttrs: D.safe(function () { return D.dataAttrs(el); }, {}),
        text: D.safe(function () { return D.visibleText(el).slice(0, 200); }, ''),
        rect: D.safe(function () { return D.rect(el); }, null),
        context: D.safe(function () { return D.contextOf(el); }, {}),
        label: D.safe(function () { return D.labelEvidence(el); }, {})
    };
};
"""

CAPTURE_SCRIPT = CAPTURE_LIBRARY + "return D.capture(arguments[0]);"


@dataclass
class CaptureResult:
    """Bundle plus derived label, or the reason capture failed."""
    bundle: Optional[ElementBundle] = None
    label: str = ""
    label_source: Optional[str] = None
    failure: Optional[CaptureFailure] = None

    @property
    def success(self) -> bool:
        return self.bundle is not None


def build_bundle(evidence: Mapping[str, Any]) -> ElementBundle:
    """Build a bundle from the capture script's evidence object."""
    context = parse_context(evidence.get("context"))
    data_attrs: Dict[str, str] = {
        str(k): str(v) for k, v in (evidence.get("dataAttrs") or {}).items() if v
    }
    return ElementBundle(
        xpath=evidence.get("path") or "",
        id=(evidence.get("id") or "").strip(),
        name=(evidence.get("name") or "").strip(),
        aria_label=(evidence.get("ariaLabel") or "").strip(),
        placeholder=(evidence.get("placeholder") or "").strip(),
        class_list=" ".join((evidence.get("className") or "").split()),
        data_attrs=data_attrs,
        tag=evidence.get("tag") or "",
        text=(evidence.get("text") or "").strip()[:MAX_TEXT_LENGTH],
        bounding=BoundingBox.from_dict(evidence.get("rect")),
        frame_chain=context.frame_chain,
        shadow_hosts=context.shadow_hosts,
        is_closed_shadow=context.is_closed_shadow,
    )


def capture_from_evidence(evidence: Optional[Mapping[str, Any]]) -> CaptureResult:
    """
    Turn raw evidence into a ``CaptureResult``.

    Never raises: malformed evidence becomes a ``CaptureFailure``.
    """
    if not evidence:
        return CaptureResult(failure=CaptureFailure("No element evidence captured", stage="script"))
    try:
        bundle = build_bundle(evidence)
    except (TypeError, ValueError, AttributeError) as e:
        return CaptureResult(failure=CaptureFailure(f"Malformed evidence: {e}", stage="bundle"))
    if not bundle.has_locator():
        return CaptureResult(failure=CaptureFailure(
            f"Element <{bundle.tag or '?'}> has no usable locator", stage="bundle",
        ))
    source, label = derive_label_with_source(evidence.get("label") or {})
    return CaptureResult(bundle=bundle, label=label, label_source=source)


class LocatorGenerator:
    """
    Build bundles for live elements.

    Example:
        >>> generator = LocatorGenerator(driver)
        >>> result = generator.generate(driver.find_element("id", "email"))
        >>> result.bundle.id, result.label
        ('email', 'Email address')
    """

    def __init__(self, driver: "WebDriver"):
        self.driver = driver

    def generate(self, element: "WebElement") -> CaptureResult:
        """Capture ``element`` relative to the driver's current frame."""
        try:
            evidence = self.driver.execute_script(CAPTURE_SCRIPT, element)
        except StaleElementReferenceException:
            return CaptureResult(failure=CaptureFailure("Element detached before capture", stage="script"))
        except (JavascriptException, WebDriverException) as e:
            logger.debug("Capture script failed: %s", e)
            return CaptureResult(failure=CaptureFailure(f"Capture script failed: {e.msg}", stage="script"))
        result = capture_from_evidence(evidence)
        if result.failure:
            logger.debug("Capture rejected: %s", result.failure)
        return result
