from .coverage import CoverageTracker
from .iteration_controller import ControllerState, IterationController, classify_selection
from .recommendation import generate_recommendations
from .result_aggregator import ResultAggregator

__all__ = [
    "ControllerState",
    "CoverageTracker",
    "IterationController",
    "ResultAggregator",
    "classify_selection",
    "generate_recommendations",
]
