"""Autonomous agent engine and goal planner."""

from .engine import AutonomousAgentEngine, CancellationToken
from .planner import GoalPlanner

__all__ = ["AutonomousAgentEngine", "CancellationToken", "GoalPlanner"]
