"""
Driver Factory - WebDriver creation and per-row page lifecycle.

Creates the Chrome driver, installs the closed-shadow hook before any page
script runs, and hands out fresh browser tabs for batch rows.
"""

from typing import Optional
import logging
import warnings

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.support.ui import WebDriverWait

from ditto.core.session import CancellationToken

logger = logging.getLogger(__name__)

# Type alias for driver - can be extended to support other wrappers
WebDriverType = webdriver.Chrome

# Runs in every document before page script. Keeps a hidden reference to
# closed shadow roots so the context tracker can enter them later.
CLOSED_SHADOW_HOOK = r"""
(function () {
    if (window.__dittoShadowHook) { return; }
    var original = Element.prototype.attachShadow;
    if (!original) { return; }
    Object.defineProperty(window, '__dittoClosedRoots', {value: [], enumerable: false});
    Element.prototype.attachShadow = function (init) {
        var root = original.call(this, init);
        if (init && init.mode === 'closed') {
            Object.defineProperty(this, '__dittoShadowRoot', {
                value: root, enumerable: false, configurable: true
            });
            window.__dittoClosedRoots.push(root);
        }
        return root;
    };
    Object.defineProperty(window, '__dittoShadowHook', {value: true, enumerable: false});
})();
"""


def create_driver(
    headless: bool = False,
    install_shadow_hook: bool = True,
    enable_stability: bool = False,
    profile_path: Optional[str] = None,
    # Waitless stability config
    stability_timeout: int = 15,
    mutation_threshold: int = 200,
    stability_mode: str = "relaxed",
) -> WebDriverType:
    """
    Create a Chrome WebDriver ready for recording and replay.

    Args:
        headless: Run browser in headless mode
        install_shadow_hook: Expose closed shadow roots to the context tracker
        enable_stability: Wrap the driver with waitless quiescence detection
        profile_path: Path to browser profile for session persistence

    Example:
        >>> driver = create_driver(headless=True)
        >>> driver.get("https://example.com")
    """
    driver = _create_standard_driver(headless, profile_path)

    if install_shadow_hook:
        install_closed_shadow_hook(driver)

    if enable_stability:
        driver = _apply_stability_wrapper(
            driver,
            timeout=stability_timeout,
            mutation_threshold=mutation_threshold,
            strictness=stability_mode,
        )

    return driver


def _create_standard_driver(headless: bool = False, profile_path: Optional[str] = None) -> webdriver.Chrome:
    """Create a standard Chrome WebDriver."""
    options = ChromeOptions()

    if headless:
        options.add_argument("--headless=new")

    if profile_path:
        options.add_argument(f"--user-data-dir={profile_path}")

    # Common stability options
    options.add_argument("--disable-extensions")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--window-size=1920,1080")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])

    return webdriver.Chrome(options=options)


def install_closed_shadow_hook(driver: WebDriverType) -> bool:
    """
    Register the closed-shadow hook for every future document.

    Returns False when the driver has no CDP access; closed shadow roots then
    stay unreachable and resolution reports it.
    """
    try:
        driver.execute_cdp_cmd(
            "Page.addScriptToEvaluateOnNewDocument",
            {"source": CLOSED_SHADOW_HOOK},
        )
        return True
    except (AttributeError, WebDriverException) as e:
        warnings.warn(
            f"Closed shadow hook could not be installed: {e}. "
            "Elements inside closed shadow roots will not be reachable.",
            UserWarning,
        )
        return False


def _apply_stability_wrapper(
    driver: WebDriverType,
    timeout: int = 15,
    mutation_threshold: int = 200,
    strictness: str = "relaxed",
) -> WebDriverType:
    """
    Make driver commands wait for DOM quiescence (waitless).

    Replayed clicks then land after the page has stopped re-rendering. The
    plain driver is returned, with a warning, when waitless is missing or
    refuses the driver.
    """
    try:
        from waitless import stabilize, StabilizationConfig
    except ImportError:
        warnings.warn(
            "waitless not installed; replay runs without DOM stability waits. "
            "Install with: pip install ditto-replay[stability]",
            UserWarning,
        )
        return driver

    config = StabilizationConfig(
        timeout=timeout,
        strictness=strictness,
        mutation_rate_threshold=mutation_threshold,
        debug_mode=logger.isEnabledFor(logging.DEBUG),
    )
    try:
        stabilized = stabilize(driver, config=config)
    except Exception as e:
        warnings.warn(f"waitless could not wrap the driver: {e}", UserWarning)
        return driver
    logger.debug("Driver wrapped with waitless (%s, %ss)", strictness, timeout)
    return stabilized


class PageSession:
    """
    One browser tab owned by one batch row.

    Use as a context manager so the tab is closed even when the row fails.
    """

    def __init__(self, driver: WebDriverType, handle: str, origin_handle: Optional[str],
                 load_fallback_delay: float = 2.0):
        self.driver = driver
        self.handle = handle
        self.origin_handle = origin_handle
        self.load_fallback_delay = load_fallback_delay
        self.closed = False

    def navigate(self, url: str) -> None:
        self.driver.get(url)

    def wait_until_loaded(self, timeout: float = 30, token: Optional[CancellationToken] = None) -> bool:
        """
        Wait for ``document.readyState == "complete"``.

        On timeout, waits the fixed fallback delay on ``token`` and returns
        False. Driver errors (a crashed or closed tab) propagate.
        """
        try:
            WebDriverWait(self.driver, timeout).until(
                lambda d: d.execute_script("return document.readyState") == "complete"
            )
            return True
        except TimeoutException:
            logger.warning("Load signal not received in %ss, waiting %ss instead",
                           timeout, self.load_fallback_delay)
            (token or CancellationToken()).wait(self.load_fallback_delay)
            return False

    def close(self) -> None:
        """Close the tab and return to the tab that opened it. Idempotent."""
        if self.closed:
            return
        self.closed = True
        try:
            self.driver.switch_to.window(self.handle)
            self.driver.close()
        except WebDriverException as e:
            logger.debug("Tab %s already gone: %s", self.handle, e.msg)
        remaining = []
        try:
            remaining = self.driver.window_handles
        except WebDriverException as e:
            logger.debug("Could not list tabs after close: %s", e.msg)
        target = self.origin_handle if self.origin_handle in remaining else (remaining[0] if remaining else None)
        if target:
            try:
                self.driver.switch_to.window(target)
            except WebDriverException as e:
                logger.debug("Could not switch back to tab %s: %s", target, e.msg)

    def __enter__(self) -> "PageSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class BrowserPageProvider:
    """
    Opens a fresh tab per row on one shared driver.

    Example:
        >>> provider = BrowserPageProvider(headless=True)
        >>> with provider.open("https://example.com/form") as page:
        ...     page.wait_until_loaded()
        >>> provider.close()
    """

    def __init__(
        self,
        driver: Optional[WebDriverType] = None,
        headless: bool = False,
        script_timeout: float = 30,
        page_load_timeout: float = 30,
        load_fallback_delay: float = 2.0,
        install_shadow_hook: bool = True,
        enable_stability: bool = False,
        stability_mode: str = "relaxed",
        profile_path: Optional[str] = None,
    ):
        self._driver = driver
        self.headless = headless
        self.install_shadow_hook = install_shadow_hook
        self.enable_stability = enable_stability
        self.stability_mode = stability_mode
        self.profile_path = profile_path
        self.script_timeout = script_timeout
        self.page_load_timeout = page_load_timeout
        self.load_fallback_delay = load_fallback_delay
        self._owns_driver = driver is None

    @property
    def driver(self) -> WebDriverType:
        """Get the WebDriver instance, creating it if needed."""
        if self._driver is None:
            self._driver = create_driver(
                headless=self.headless,
                install_shadow_hook=self.install_shadow_hook,
                enable_stability=self.enable_stability,
                profile_path=self.profile_path,
                stability_mode=self.stability_mode,
            )
        return self._driver

    def open(self, url: str) -> PageSession:
        """Open ``url`` in a new tab and return its session."""
        driver = self.driver
        try:
            origin = driver.current_window_handle
        except WebDriverException:
            origin = None
        driver.switch_to.new_window("tab")
        page = PageSession(driver, driver.current_window_handle, origin, self.load_fallback_delay)
        try:
            if self.install_shadow_hook:
                # CDP document scripts are per tab.
                install_closed_shadow_hook(driver)
            driver.set_script_timeout(self.script_timeout)
            driver.set_page_load_timeout(self.page_load_timeout)
            if url:
                page.navigate(url)
        except TimeoutException:
            logger.warning("Navigation to %s exceeded %ss", url, self.page_load_timeout)
        except WebDriverException:
            page.close()
            raise
        return page

    def close(self) -> None:
        """Quit the driver if this provider created it."""
        if self._driver is not None and self._owns_driver:
            try:
                self._driver.quit()
            except WebDriverException as e:
                logger.debug("Driver quit failed: %s", e.msg)
        self._driver = None

    def __enter__(self) -> "BrowserPageProvider":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
