"""
Context Tracker - frame and shadow-root boundaries.

Capture records, outermost first, the frames and shadow hosts an element
sits behind. Resolution replays that path outside-in: it switches the
driver into each frame, then walks shadow hosts inside the final frame
document. The result is an ``ExecutionContext`` whose queries all run
against the resolved root (a document or a shadow root).

Closed shadow roots can only be entered when the closed-shadow hook from
``ditto.core.driver_factory`` ran before page script. Without it,
resolution fails instead of searching the host's light DOM.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING
import logging

from selenium.common.exceptions import (
    JavascriptException,
    NoSuchFrameException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)

from ditto.core.errors import ResolutionFailure
from ditto.layers.sense.bundle import BoundingBox, ElementBundle, FrameDescriptor

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver
    from selenium.webdriver.remote.webelement import WebElement

logger = logging.getLogger(__name__)


# Shared in-page helpers. Every script that needs a root or a path prepends
# this and calls into the ``D`` object.
PRELUDE = r"""
var D = {
    segmentPath: function (el) {
        var parts = [];
        var node = el;
        while (node && node.nodeType === 1) {
            var tag = node.tagName.toLowerCase();
            var parent = node.parentNode;
            var seg = tag;
            if (parent && parent.children) {
                var same = [];
                for (var i = 0; i < parent.children.length; i++) {
                    if (parent.children[i].tagName === node.tagName) { same.push(parent.children[i]); }
                }
                if (same.length > 1) { seg = tag + '[' + (same.indexOf(node) + 1) + ']'; }
            }
            parts.unshift(seg);
            if (!parent || parent.nodeType === 9 || parent.nodeType === 11) { break; }
            node = parent;
        }
        return '/' + parts.join('/');
    },

    evalPath: function (root, path) {
        var segs = (path || '').split('/').filter(function (s) { return s.length > 0; });
        if (!segs.length) { return []; }
        var current = [root];
        for (var s = 0; s < segs.length; s++) {
            var m = /^([^\[\]]+)(?:\[(\d+)\])?$/.exec(segs[s]);
            if (!m) { return []; }
            var tag = m[1].toLowerCase();
            var index = m[2] ? parseInt(m[2], 10) : null;
            var next = [];
            for (var c = 0; c < current.length; c++) {
                var kids = current[c].children || [];
                var same = [];
                for (var k = 0; k < kids.length; k++) {
                    if (kids[k].tagName && kids[k].tagName.toLowerCase() === tag) { same.push(kids[k]); }
                }
                if (index === null) {
                    next = next.concat(same);
                } else if (same[index - 1]) {
                    next.push(same[index - 1]);
                }
            }
            current = next;
            if (!current.length) { return []; }
        }
        return current;
    },

    shadowOf: function (host) {
        if (!host) { return null; }
        return host.shadowRoot || host.__dittoShadowRoot || null;
    },

    resolveRoot: function (hosts, closed) {
        var root = document;
        for (var i = 0; i < hosts.length; i++) {
            var found = D.evalPath(root, hosts[i]);
            if (found.length !== 1) {
                return {status: 'host_missing', depth: i, matches: found.length};
            }
            var sr = D.shadowOf(found[0]);
            if (!sr) {
                if (closed) {
                    return {status: 'closed_unreachable', depth: i, hook: !!window.__dittoShadowHook};
                }
                return {status: 'no_shadow_root', depth: i};
            }
            root = sr;
        }
        return {status: 'ok', root: root};
    },

    rect: function (el) {
        var r = el.getBoundingClientRect();
        return {left: r.left, top: r.top, width: r.width, height: r.height};
    },

    visible: function (el) {
        var r = el.getBoundingClientRect();
        if (r.width <= 0 || r.height <= 0) { return false; }
        var view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
        var style = view.getComputedStyle(el);
        return style.visibility !== 'hidden' && style.display !== 'none';
    },

    visibleText: function (el) {
        var tag = el.tagName.toLowerCase();
        if (tag === 'input') {
            var type = (el.getAttribute('type') || '').toLowerCase();
            return (type === 'submit' || type === 'button' || type === 'reset') ? (el.value || '').trim() : '';
        }
        if (tag === 'select' || tag === 'textarea') { return ''; }
        return (el.innerText || el.textContent || '').replace(/\s+/g, ' ').trim();
    },

    contextOf: function (el) {
        var hosts = [];
        var closed = false;
        var node = el.getRootNode ? el.getRootNode() : null;
        while (node && node.host) {
            if (node.mode === 'closed') { closed = true; }
            hosts.unshift(D.segmentPath(node.host));
            node = node.host.getRootNode();
        }
        var frames = [];
        var win = (el.ownerDocument && el.ownerDocument.defaultView) || window;
        try {
            while (win && win.frameElement) {
                var fe = win.frameElement;
                var all = Array.prototype.slice.call(fe.ownerDocument.querySelectorAll('iframe, frame'));
                frames.unshift({id: fe.id || '', name: fe.getAttribute('name') || '', index: all.indexOf(fe)});
                win = fe.ownerDocument.defaultView;
            }
        } catch (e) {
            // cross-origin parent: the chain stops at the last reachable frame
        }
        return {frameChain: frames, shadowHosts: hosts, isClosedShadow: closed};
    }
};
"""

CAPTURE_CONTEXT_SCRIPT = PRELUDE + "return D.contextOf(arguments[0]);"

FRAME_PROBE_SCRIPT = r"""
var id = arguments[0], name = arguments[1], index = arguments[2];
var frames = Array.prototype.slice.call(document.querySelectorAll('iframe, frame'));
var frame = null;
if (id) { frame = frames.filter(function (f) { return f.id === id; })[0] || null; }
if (!frame && name) { frame = frames.filter(function (f) { return f.getAttribute('name') === name; })[0] || null; }
if (!frame) { frame = frames[index] || null; }
if (!frame) { return {status: 'missing', count: frames.length}; }
var crossOrigin = false;
try {
    var doc = frame.contentDocument;
    if (!doc || !doc.documentElement) { crossOrigin = true; }
} catch (e) {
    crossOrigin = true;
}
return {status: crossOrigin ? 'cross_origin' : 'ok', frame: frame};
"""

ROOT_PROBE_SCRIPT = PRELUDE + r"""
var res = D.resolveRoot(arguments[0], arguments[1]);
delete res.root;
return res;
"""

QUERY_SCRIPT = PRELUDE + r"""
var res = D.resolveRoot(arguments[0], arguments[1]);
if (res.status !== 'ok') { return {status: res.status, elements: []}; }
var mode = arguments[2], arg = arguments[3];
var found = [];
if (mode === 'path') {
    found = D.evalPath(res.root, arg);
} else if (mode === 'css') {
    found = Array.prototype.slice.call(res.root.querySelectorAll(arg));
} else if (mode === 'candidates') {
    var nodes = res.root.querySelectorAll(arg || '*');
    for (var i = 0; i < nodes.length; i++) {
        if (!D.visible(nodes[i])) { continue; }
        found.push({element: nodes[i], text: D.visibleText(nodes[i]), rect: D.rect(nodes[i])});
    }
}
return {status: 'ok', elements: found};
"""


@dataclass
class Candidate:
    """A visible element offered to the text and position strategies."""
    element: "WebElement"
    text: str
    bounding: Optional[BoundingBox]


class ExecutionContext:
    """
    A resolved root the locator strategies search in.

    The driver must already be switched into the right frame. Each query
    re-resolves the shadow host path, so a host that is re-rendered between
    two queries is picked up again.
    """

    def __init__(
        self,
        driver: "WebDriver",
        shadow_hosts: Sequence[str] = (),
        is_closed_shadow: bool = False,
    ):
        self.driver = driver
        self.shadow_hosts = list(shadow_hosts)
        self.is_closed_shadow = is_closed_shadow

    def _query(self, mode: str, arg: str) -> List[Any]:
        result = self.driver.execute_script(
            QUERY_SCRIPT, self.shadow_hosts, self.is_closed_shadow, mode, arg
        ) or {}
        if result.get("status") != "ok":
            raise LookupError(f"Context root lost: {result.get('status')}")
        return list(result.get("elements") or [])

    def evaluate_path(self, path: str) -> List["WebElement"]:
        """Every element matching a structural path under the root."""
        return self._query("path", path)

    def query_all(self, css: str) -> List["WebElement"]:
        """Every element matching a CSS selector under the root."""
        return self._query("css", css)

    def candidates(self, tag: str = "") -> List[Candidate]:
        """Visible elements, optionally restricted to ``tag``, with text and rect."""
        raw = self._query("candidates", tag or "*")
        return [
            Candidate(
                element=item["element"],
                text=item.get("text") or "",
                bounding=BoundingBox.from_dict(item.get("rect")),
            )
            for item in raw
        ]


@dataclass
class ResolveResult:
    context: Optional[ExecutionContext] = None
    failure: Optional[ResolutionFailure] = None

    @property
    def success(self) -> bool:
        return self.context is not None


@dataclass
class CapturedContext:
    frame_chain: tuple = ()
    shadow_hosts: tuple = ()
    is_closed_shadow: bool = False


def parse_context(raw: Optional[Dict[str, Any]]) -> CapturedContext:
    """Turn the in-page context object into descriptors."""
    raw = raw or {}
    return CapturedContext(
        frame_chain=tuple(FrameDescriptor.from_dict(f) for f in raw.get("frameChain") or ()),
        shadow_hosts=tuple(raw.get("shadowHosts") or ()),
        is_closed_shadow=bool(raw.get("isClosedShadow")),
    )


class ContextTracker:
    """
    Captures and resolves the frame / shadow path of an element.

    Example:
        >>> tracker = ContextTracker(driver)
        >>> result = tracker.resolve(bundle)
        >>> if result.success:
        ...     matches = result.context.query_all("#email")
    """

    def __init__(self, driver: "WebDriver"):
        self.driver = driver

    def capture_context(self, element: "WebElement") -> CapturedContext:
        """
        Context of ``element`` relative to the driver's current frame.

        Degrades to an empty context when the element is gone.
        """
        try:
            raw = self.driver.execute_script(CAPTURE_CONTEXT_SCRIPT, element)
        except (StaleElementReferenceException, JavascriptException) as e:
            logger.debug("Context capture failed: %s", e)
            return CapturedContext()
        return parse_context(raw)

    def resolve(self, bundle: ElementBundle) -> ResolveResult:
        return self.resolve_context(bundle.frame_chain, bundle.shadow_hosts, bundle.is_closed_shadow)

    def resolve_context(
        self,
        frame_chain: Sequence[FrameDescriptor],
        shadow_hosts: Sequence[str],
        is_closed_shadow: bool = False,
    ) -> ResolveResult:
        """Enter every frame, then check every shadow host, outside-in."""
        try:
            self.driver.switch_to.default_content()
            for depth, frame in enumerate(frame_chain):
                failure = self._enter_frame(frame, depth)
                if failure:
                    self.driver.switch_to.default_content()
                    return ResolveResult(failure=failure)

            if shadow_hosts:
                probe = self.driver.execute_script(
                    ROOT_PROBE_SCRIPT, list(shadow_hosts), is_closed_shadow
                ) or {}
                failure = self._shadow_failure(probe, shadow_hosts)
                if failure:
                    return ResolveResult(failure=failure)
        except TimeoutException as e:
            return ResolveResult(failure=ResolutionFailure(f"Context probe timed out: {e.msg}", stage="driver"))
        except WebDriverException as e:
            return ResolveResult(failure=ResolutionFailure(f"Context probe failed: {e.msg}", stage="driver"))

        return ResolveResult(context=ExecutionContext(self.driver, shadow_hosts, is_closed_shadow))

    def _enter_frame(self, frame: FrameDescriptor, depth: int) -> Optional[ResolutionFailure]:
        probe = self.driver.execute_script(FRAME_PROBE_SCRIPT, frame.id, frame.name, frame.index) or {}
        status = probe.get("status")
        if status == "missing":
            logger.debug("Frame %s not found at depth %d", frame, depth)
            return ResolutionFailure(f"{frame} not found at depth {depth}", stage="frame")
        if status == "cross_origin":
            logger.debug("Frame %s is cross-origin", frame)
            return ResolutionFailure(f"{frame} is cross-origin and cannot be entered", stage="cross_origin")
        try:
            self.driver.switch_to.frame(probe["frame"])
        except NoSuchFrameException as e:
            return ResolutionFailure(f"{frame} vanished before switch: {e.msg}", stage="frame")
        return None

    def _shadow_failure(self, probe: Dict[str, Any], shadow_hosts: Sequence[str]) -> Optional[ResolutionFailure]:
        status = probe.get("status")
        if status == "ok":
            return None
        depth = probe.get("depth", 0)
        host = shadow_hosts[depth] if depth < len(shadow_hosts) else "?"
        if status == "closed_unreachable":
            hook = "installed" if probe.get("hook") else "not installed"
            logger.debug("Closed shadow root at %s unreachable (hook %s)", host, hook)
            return ResolutionFailure(
                f"Closed shadow root of {host} is not exposed (hook {hook})",
                stage="closed_shadow",
            )
        if status == "no_shadow_root":
            return ResolutionFailure(f"Host {host} has no shadow root", stage="shadow_host")
        return ResolutionFailure(
            f"Shadow host {host} matched {probe.get('matches', 0)} elements",
            stage="shadow_host",
        )
