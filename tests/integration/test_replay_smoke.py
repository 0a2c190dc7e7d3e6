"""
Browser-backed smoke tests. Needs Chrome; enabled with DITTO_BROWSER_TESTS=1.
"""

import os

import pytest
from ditto.core.config import RunConfig
from ditto.core.driver_factory import BrowserPageProvider
from ditto.core.models import ActionKind, Sequence, Step
from ditto.core.orchestrator import BatchOrchestrator
from ditto.core.results import RowStatus, StepStatus
from ditto.layers.sense.bundle import ElementBundle
from ditto.layers.sense.context_tracker import ContextTracker
from ditto.layers.sense.locator_generator import LocatorGenerator

pytestmark = [
    pytest.mark.browser,
    pytest.mark.skipif(os.environ.get("DITTO_BROWSER_TESTS") != "1", reason="set DITTO_BROWSER_TESTS=1 to run"),
]

FORM_PAGE = """<!doctype html>
<html><body>
  <form id="signup" onsubmit="event.preventDefault(); document.title = 'sent:' + this.email.value;">
    <div class="wrapper">
      <label for="email">Email *</label>
      <input id="email" name="email" placeholder="you@example.com">
    </div>
    <label>Name <input name="full_name"></label>
    <button type="submit" class="btn btn-primary">Sign up</button>
  </form>
  <x-card id="card"></x-card>
  <script>
    customElements.define('x-card', class extends HTMLElement {
      constructor() {
        super();
        this.attachShadow({mode: 'open'}).innerHTML = '<input aria-label="Coupon" id="coupon">';
      }
    });
  </script>
</body></html>
"""


@pytest.fixture(scope="module")
def provider():
    provider = BrowserPageProvider(headless=True)
    yield provider
    provider.close()


@pytest.fixture
def form_url(tmp_path):
    path = tmp_path / "form.html"
    path.write_text(FORM_PAGE, encoding="utf-8")
    return path.as_uri()


def test_capture_inside_open_shadow_root(provider, form_url):
    with provider.open(form_url) as page:
        page.wait_until_loaded()
        host = page.driver.find_element("id", "card")
        element = page.driver.execute_script("return arguments[0].shadowRoot.querySelector('#coupon')", host)

        capture = LocatorGenerator(page.driver).generate(element)

        assert capture.success
        assert capture.label == "Coupon"
        assert len(capture.bundle.shadow_hosts) == 1

        resolved = ContextTracker(page.driver).resolve(capture.bundle)
        assert resolved.success
        assert len(resolved.context.query_all("#coupon")) == 1


def test_replay_survives_changed_structure(provider, form_url, tmp_path):
    sequence = Sequence(
        "smoke",
        start_url=form_url,
        steps=[
            # stale structural path; the identifier still matches
            Step(action=ActionKind.TEXT_ENTRY, label="Email", value="rec@x.com",
                 bundle=ElementBundle(xpath="/html[1]/body[1]/div[9]/input[1]", id="email", tag="input")),
            Step(action=ActionKind.TEXT_ENTRY, label="Name", value="Rec",
                 bundle=ElementBundle(name="full_name", tag="input")),
            Step(action=ActionKind.CLICK, label="Sign up",
                 bundle=ElementBundle(tag="button", text="Sign up", class_list="btn btn-primary")),
        ],
    )
    config = RunConfig(random_delay_range=(0.0, 0.0), report_dir=str(tmp_path / "reports"))
    orchestrator = BatchOrchestrator(provider, config)

    result = orchestrator.run(sequence, rows=[{"Email": "a@b.com", "Name": "Ann"}, {"Email": "b@c.com"}])

    assert [row.status for row in result.rows] == [RowStatus.PASSED, RowStatus.PASSED]
    assert result.rows[0].outcomes[0].strategy == "identifier"
    assert result.rows[1].outcomes[1].status is StepStatus.SKIPPED
    assert os.path.exists(result.report_path)
