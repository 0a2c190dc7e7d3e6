"""Action Layer - locating and acting on recorded targets."""

from ditto.layers.action.executor import ActionResult, StepExecutor
from ditto.layers.action.locator import LocateResult, MultiStrategyLocator

__all__ = ["ActionResult", "StepExecutor", "LocateResult", "MultiStrategyLocator"]
