"""
Run configuration.

Tunable constants of the replay engine. Defaults are the values the
recorder was calibrated with; every one of them can be overridden from the
CLI or from ``DITTO_*`` environment variables.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Tuple
import os

STABILITY_MODES = ("strict", "normal", "relaxed")


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LocatorSettings:
    """Thresholds of the two heuristic locator strategies."""
    fuzzy_threshold: float = 0.5  # token overlap must be strictly greater
    bbox_tolerance_px: float = 200.0


@dataclass
class RunConfig:
    """Configuration for a batch run."""
    headless: bool = False
    global_delay_ms: int = 0
    random_delay_range: Tuple[float, float] = (1.0, 3.0)
    step_timeout: float = 30.0
    page_load_timeout: float = 30.0
    load_fallback_delay: float = 2.0
    skip_unmatched_rows: bool = True
    report_dir: str = "./ditto_reports"
    seed: Optional[int] = None
    stability: bool = False
    stability_mode: str = "relaxed"
    profile_path: Optional[str] = None
    locator: LocatorSettings = field(default_factory=LocatorSettings)

    ENV_PREFIX = "DITTO_"

    def validate(self) -> "RunConfig":
        if self.global_delay_ms < 0:
            raise ValueError("global_delay_ms must be >= 0")
        low, high = self.random_delay_range
        if low < 0 or high < low:
            raise ValueError(f"Invalid random delay range {self.random_delay_range}")
        for name in ("step_timeout", "page_load_timeout", "load_fallback_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if not 0 <= self.locator.fuzzy_threshold < 1:
            raise ValueError("fuzzy_threshold must be in [0, 1)")
        if self.locator.bbox_tolerance_px <= 0:
            raise ValueError("bbox_tolerance_px must be > 0")
        if self.stability_mode not in STABILITY_MODES:
            raise ValueError(f"stability_mode must be one of {', '.join(STABILITY_MODES)}")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "RunConfig":
        """
        Build a config from ``DITTO_*`` environment variables.

        Keyword overrides win over the environment. ``None`` overrides are
        ignored so CLI options that were not given fall through.
        """
        env = os.environ if environ is None else environ
        p = cls.ENV_PREFIX
        config = cls()
        locator = LocatorSettings()

        if f"{p}HEADLESS" in env:
            config.headless = _flag(env[f"{p}HEADLESS"])
        if f"{p}STABILITY" in env:
            config.stability = _flag(env[f"{p}STABILITY"])
        if f"{p}STABILITY_MODE" in env:
            config.stability_mode = env[f"{p}STABILITY_MODE"].strip().lower()
        if f"{p}PROFILE" in env:
            config.profile_path = env[f"{p}PROFILE"]
        if f"{p}GLOBAL_DELAY_MS" in env:
            config.global_delay_ms = int(env[f"{p}GLOBAL_DELAY_MS"])
        if f"{p}STEP_TIMEOUT" in env:
            config.step_timeout = float(env[f"{p}STEP_TIMEOUT"])
        if f"{p}PAGE_LOAD_TIMEOUT" in env:
            config.page_load_timeout = float(env[f"{p}PAGE_LOAD_TIMEOUT"])
        if f"{p}REPORT_DIR" in env:
            config.report_dir = env[f"{p}REPORT_DIR"]
        if f"{p}FUZZY_THRESHOLD" in env:
            locator.fuzzy_threshold = float(env[f"{p}FUZZY_THRESHOLD"])
        if f"{p}BBOX_TOLERANCE" in env:
            locator.bbox_tolerance_px = float(env[f"{p}BBOX_TOLERANCE"])
        config.locator = locator

        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **overrides).validate()
