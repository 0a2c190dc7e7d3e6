"""
Multi-Strategy Locator - re-find a captured element on a live page.

Strategies run in a fixed priority order. Each one only runs when the
bundle field it needs is present, never looks at another strategy's
results, and must produce exactly one match to win. When all of them come
up empty the caller gets a ``LocatorNotFound`` listing every attempt.
"""

from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, TYPE_CHECKING
import logging

from selenium.common.exceptions import WebDriverException

from ditto.core.config import LocatorSettings
from ditto.core.errors import LocatorNotFound, StrategyAttempt
from ditto.layers.sense.bundle import ElementBundle
from ditto.layers.sense.context_tracker import ExecutionContext

if TYPE_CHECKING:
    from selenium.webdriver.remote.webelement import WebElement

logger = logging.getLogger(__name__)

MATCHED = "matched"
NO_MATCH = "no_match"
AMBIGUOUS = "ambiguous"
SKIPPED = "skipped"
ERROR = "error"


def css_string(value: str) -> str:
    """Quote ``value`` for use inside a CSS attribute selector."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\a ").replace("\r", "\\d ")
    return f'"{escaped}"'


def attr_selector(attr: str, value: str, tag: str = "") -> str:
    return f"{tag}[{attr}={css_string(value)}]"


def text_similarity(a: str, b: str) -> float:
    """
    Token overlap: shared lowercase words over the larger word set.

    Identical strings score 1.0; anything with an empty side scores 0.0.
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    common = len(tokens_a & tokens_b)
    return common / max(len(tokens_a), len(tokens_b))


@dataclass
class StrategyOutcome:
    outcome: str
    element: Optional["WebElement"] = None
    detail: str = ""


def _single(elements: List["WebElement"], what: str) -> StrategyOutcome:
    if len(elements) == 1:
        return StrategyOutcome(MATCHED, elements[0], what)
    if not elements:
        return StrategyOutcome(NO_MATCH, detail=what)
    return StrategyOutcome(AMBIGUOUS, detail=f"{what} matched {len(elements)} elements")


class Strategy(NamedTuple):
    """One independent way to find the element."""
    name: str
    applies: Callable[[ElementBundle], bool]
    attempt: Callable[[ElementBundle, ExecutionContext, LocatorSettings], StrategyOutcome]


def _by_path(bundle, ctx, settings):
    return _single(ctx.evaluate_path(bundle.xpath), bundle.xpath)


def _by_attribute(attr: str, getter: Callable[[ElementBundle], str]):
    def attempt(bundle, ctx, settings):
        selector = attr_selector(attr, getter(bundle))
        return _single(ctx.query_all(selector), selector)
    return attempt


def _by_data_attrs(bundle, ctx, settings):
    # First pair that pins down exactly one element wins.
    tried = []
    for key, value in bundle.data_attrs.items():
        selector = attr_selector(f"data-{key}", value)
        outcome = _single(ctx.query_all(selector), selector)
        if outcome.outcome == MATCHED:
            return outcome
        tried.append(f"{selector}: {outcome.outcome}")
    return StrategyOutcome(NO_MATCH, detail="; ".join(tried))


def _by_class_list(bundle, ctx, settings):
    selector = "".join(f"[class~={css_string(c)}]" for c in bundle.classes)
    return _single(ctx.query_all(selector), selector)


def _by_fuzzy_text(bundle, ctx, settings):
    best_score = 0.0
    best = []
    for candidate in ctx.candidates(bundle.tag):
        score = text_similarity(bundle.text, candidate.text)
        if score <= settings.fuzzy_threshold:
            continue
        if score > best_score:
            best_score, best = score, [candidate]
        elif score == best_score:
            best.append(candidate)
    if not best:
        return StrategyOutcome(NO_MATCH, detail=f"no text above {settings.fuzzy_threshold}")
    if len(best) > 1:
        return StrategyOutcome(AMBIGUOUS, detail=f"{len(best)} elements tie at {best_score:.2f}")
    return StrategyOutcome(MATCHED, best[0].element, f"similarity {best_score:.2f}")


def _by_bounding_box(bundle, ctx, settings):
    target = bundle.bounding
    scored = []
    for candidate in ctx.candidates(bundle.tag):
        if candidate.bounding is None:
            continue
        distance = target.distance_to(candidate.bounding)
        if distance < settings.bbox_tolerance_px:
            scored.append((distance, abs(candidate.bounding.area - target.area), candidate))
    if not scored:
        return StrategyOutcome(NO_MATCH, detail=f"nothing within {settings.bbox_tolerance_px:.0f}px")
    scored.sort(key=lambda s: (s[0], s[1]))
    if len(scored) > 1 and scored[0][:2] == scored[1][:2]:
        return StrategyOutcome(AMBIGUOUS, detail=f"{len(scored)} elements equally close")
    distance, _, best = scored[0]
    return StrategyOutcome(MATCHED, best.element, f"distance {distance:.1f}px")


STRATEGIES: List[Strategy] = [
    Strategy("structural_path", lambda b: bool(b.xpath), _by_path),
    Strategy("identifier", lambda b: bool(b.id), _by_attribute("id", lambda b: b.id)),
    Strategy("name", lambda b: bool(b.name), _by_attribute("name", lambda b: b.name)),
    Strategy("data_attribute", lambda b: bool(b.data_attrs), _by_data_attrs),
    Strategy("accessible_label", lambda b: bool(b.aria_label), _by_attribute("aria-label", lambda b: b.aria_label)),
    Strategy("placeholder", lambda b: bool(b.placeholder), _by_attribute("placeholder", lambda b: b.placeholder)),
    Strategy("class_list", lambda b: bool(b.classes), _by_class_list),
    Strategy("fuzzy_text", lambda b: bool(b.text), _by_fuzzy_text),
    Strategy("bounding_box", lambda b: b.bounding is not None, _by_bounding_box),
]


@dataclass
class LocateResult:
    element: Optional["WebElement"] = None
    strategy: Optional[str] = None
    attempts: List[StrategyAttempt] = field(default_factory=list)
    failure: Optional[LocatorNotFound] = None

    @property
    def success(self) -> bool:
        return self.element is not None


class MultiStrategyLocator:
    """
    Walk the strategy chain against a resolved context.

    Example:
        >>> locator = MultiStrategyLocator()
        >>> result = locator.locate(step.bundle, context)
        >>> result.strategy
        'identifier'
    """

    def __init__(
        self,
        settings: Optional[LocatorSettings] = None,
        strategies: Optional[List[Strategy]] = None,
    ):
        self.settings = settings or LocatorSettings()
        self.strategies = strategies if strategies is not None else STRATEGIES

    def locate(self, bundle: ElementBundle, context: ExecutionContext) -> LocateResult:
        attempts: List[StrategyAttempt] = []
        for strategy in self.strategies:
            if not strategy.applies(bundle):
                attempts.append(StrategyAttempt(strategy.name, SKIPPED))
                continue
            try:
                outcome = strategy.attempt(bundle, context, self.settings)
            except (WebDriverException, LookupError) as e:
                logger.debug("Strategy %s errored for %s: %s", strategy.name, bundle.describe(), e)
                attempts.append(StrategyAttempt(strategy.name, ERROR, str(e)))
                continue

            attempts.append(StrategyAttempt(strategy.name, outcome.outcome, outcome.detail))
            if outcome.outcome == MATCHED:
                logger.debug("Located %s via %s (%s)", bundle.describe(), strategy.name, outcome.detail)
                return LocateResult(element=outcome.element, strategy=strategy.name, attempts=attempts)
            logger.debug("Strategy %s: %s %s", strategy.name, outcome.outcome, outcome.detail)

        logger.warning("No strategy located %s", bundle.describe())
        return LocateResult(
            attempts=attempts,
            failure=LocatorNotFound(
                f"All strategies exhausted for {bundle.describe()}",
                stage="locate",
                attempts=attempts,
            ),
        )
