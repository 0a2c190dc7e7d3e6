from selenium.common.exceptions import WebDriverException
from ditto.core.config import LocatorSettings
from ditto.layers.action.locator import (
    AMBIGUOUS,
    ERROR,
    MATCHED,
    NO_MATCH,
    SKIPPED,
    MultiStrategyLocator,
    attr_selector,
    text_similarity,
)
from ditto.layers.sense.bundle import BoundingBox, ElementBundle
from ditto.layers.sense.context_tracker import Candidate


class FakeContext:
    """Answers locator queries from canned tables instead of a browser."""

    def __init__(self, paths=None, css=None, candidates=None, fail_css=False):
        self.paths = paths or {}
        self.css = css or {}
        self._candidates = candidates or []
        self.fail_css = fail_css
        self.queries = []

    def evaluate_path(self, path):
        self.queries.append(("path", path))
        return list(self.paths.get(path, []))

    def query_all(self, selector):
        self.queries.append(("css", selector))
        if self.fail_css:
            raise WebDriverException("script error")
        return list(self.css.get(selector, []))

    def candidates(self, tag=""):
        self.queries.append(("candidates", tag))
        return list(self._candidates)


def outcomes(result):
    return {a.strategy: a.outcome for a in result.attempts}


def test_text_similarity():
    assert text_similarity("Save", "save") == 1.0
    assert text_similarity("Save draft", "Save") == 0.5
    assert text_similarity("", "Save") == 0.0
    assert text_similarity("Submit order now", "Submit order") == 2 / 3


def test_attr_selector_escapes_quotes():
    assert attr_selector("aria-label", 'Say "hi"') == '[aria-label="Say \\"hi\\""]'


def test_structural_path_wins_first():
    el = object()
    bundle = ElementBundle(xpath="/html[1]/body[1]/input[1]", id="email")
    context = FakeContext(paths={bundle.xpath: [el]})

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.element is el
    assert result.strategy == "structural_path"
    assert context.queries == [("path", bundle.xpath)]


def test_falls_through_to_identifier():
    el = object()
    bundle = ElementBundle(xpath="/html[1]/body[1]/input[1]", id="email")
    context = FakeContext(css={'[id="email"]': [el]})

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.strategy == "identifier"
    assert outcomes(result)["structural_path"] == NO_MATCH


def test_ambiguous_match_is_not_accepted():
    el, other, target = object(), object(), object()
    bundle = ElementBundle(name="qty", placeholder="Quantity")
    context = FakeContext(css={'[name="qty"]': [el, other], '[placeholder="Quantity"]': [target]})

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.element is target
    assert result.strategy == "placeholder"
    assert outcomes(result)["name"] == AMBIGUOUS
    assert outcomes(result)["identifier"] == SKIPPED


def test_data_attribute_first_unique_pair():
    el = object()
    bundle = ElementBundle(data_attrs={"role": "field", "testid": "email"})
    context = FakeContext(css={
        '[data-role="field"]': [object(), object()],
        '[data-testid="email"]': [el],
    })

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.element is el
    assert result.strategy == "data_attribute"


def test_class_list_requires_all_classes():
    el = object()
    bundle = ElementBundle(class_list="btn btn-primary")
    context = FakeContext(css={'[class~="btn"][class~="btn-primary"]': [el]})

    assert MultiStrategyLocator().locate(bundle, context).strategy == "class_list"


def test_fuzzy_text_needs_strictly_greater_score():
    half = Candidate(object(), "Save draft", None)
    bundle = ElementBundle(tag="button", text="Save")
    result = MultiStrategyLocator().locate(bundle, FakeContext(candidates=[half]))

    assert not result.success
    assert outcomes(result)["fuzzy_text"] == NO_MATCH


def test_fuzzy_text_picks_best_and_filters_by_tag():
    best = Candidate(object(), "Place order", None)
    weaker = Candidate(object(), "Place your order", None)
    bundle = ElementBundle(tag="button", text="Place order")
    context = FakeContext(candidates=[weaker, best])

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.element is best.element
    assert ("candidates", "button") in context.queries


def test_fuzzy_text_tie_is_ambiguous():
    a = Candidate(object(), "Delete", None)
    b = Candidate(object(), "delete", None)
    bundle = ElementBundle(tag="button", text="Delete")
    result = MultiStrategyLocator().locate(bundle, FakeContext(candidates=[a, b]))

    assert outcomes(result)["fuzzy_text"] == AMBIGUOUS
    assert not result.success


def test_bounding_box_nearest_within_tolerance():
    near = Candidate(object(), "", BoundingBox(105, 100, 50, 20))
    far = Candidate(object(), "", BoundingBox(400, 400, 50, 20))
    bundle = ElementBundle(tag="input", bounding=BoundingBox(100, 100, 50, 20))

    result = MultiStrategyLocator().locate(bundle, FakeContext(candidates=[far, near]))

    assert result.element is near.element
    assert result.strategy == "bounding_box"


def test_bounding_box_tie_broken_by_area():
    same_size = Candidate(object(), "", BoundingBox(110, 100, 50, 20))
    bigger = Candidate(object(), "", BoundingBox(90, 100, 500, 200))
    bundle = ElementBundle(bounding=BoundingBox(100, 100, 50, 20))

    result = MultiStrategyLocator().locate(bundle, FakeContext(candidates=[bigger, same_size]))

    assert result.element is same_size.element


def test_bounding_box_respects_tolerance_setting():
    near = Candidate(object(), "", BoundingBox(150, 100, 50, 20))
    bundle = ElementBundle(bounding=BoundingBox(100, 100, 50, 20))
    locator = MultiStrategyLocator(LocatorSettings(bbox_tolerance_px=40))

    assert not locator.locate(bundle, FakeContext(candidates=[near])).success


def test_query_errors_are_recorded_and_skipped():
    el = object()
    bundle = ElementBundle(id="email", bounding=BoundingBox(0, 0, 10, 10))
    context = FakeContext(fail_css=True, candidates=[Candidate(el, "", BoundingBox(1, 1, 10, 10))])

    result = MultiStrategyLocator().locate(bundle, context)

    assert outcomes(result)["identifier"] == ERROR
    assert result.strategy == "bounding_box"


def test_not_found_lists_every_attempt():
    bundle = ElementBundle(id="gone", text="Gone")
    result = MultiStrategyLocator().locate(bundle, FakeContext())

    assert not result.success
    assert result.failure.stage == "locate"
    assert len(result.failure.attempts) == 9
    assert outcomes(result)["identifier"] == NO_MATCH
    assert outcomes(result)["bounding_box"] == SKIPPED
    assert MATCHED not in outcomes(result).values()


def test_identifier_beats_name_when_both_match():
    el = object()
    bundle = ElementBundle(id="email", name="email")
    context = FakeContext(css={'[id="email"]': [el], '[name="email"]': [el]})

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.strategy == "identifier"
    assert ("css", '[name="email"]') not in context.queries


def test_shared_class_list_is_not_found():
    bundle = ElementBundle(class_list="btn btn-primary")
    context = FakeContext(css={'[class~="btn"][class~="btn-primary"]': [object(), object()]})

    result = MultiStrategyLocator().locate(bundle, context)

    assert not result.success
    assert result.failure.kind == "locator_not_found"
    assert outcomes(result)["class_list"] == AMBIGUOUS


def test_unique_id_stops_before_shared_classes():
    submit = object()
    bundle = ElementBundle(id="submit", class_list="btn btn-primary")
    context = FakeContext(css={
        '[id="submit"]': [submit],
        '[class~="btn"][class~="btn-primary"]': [object(), object()],
    })

    result = MultiStrategyLocator().locate(bundle, context)

    assert result.element is submit
    assert result.strategy == "identifier"
    assert ("css", '[class~="btn"][class~="btn-primary"]') not in context.queries
    assert "class_list" not in outcomes(result)
