"""Strategy lifecycle: configuration checks, instance records and the state machine."""

from .models import Stage, StrategyConfig, StrategyInstance
from .state_machine import StrategyStateMachine

__all__ = ["Stage", "StrategyConfig", "StrategyInstance", "StrategyStateMachine"]
