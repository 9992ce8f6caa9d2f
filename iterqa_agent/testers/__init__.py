from .base import BaseExecutor, BaseGenerator, BaseHealer, BasePlanner, BaseReporter
from .generator import InstructionGenerator
from .healer import LLMHealer
from .planner import AspectPlanner

__all__ = [
    "AspectPlanner",
    "BaseExecutor",
    "BaseGenerator",
    "BaseHealer",
    "BasePlanner",
    "BaseReporter",
    "InstructionGenerator",
    "LLMHealer",
]
