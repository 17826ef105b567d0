"""SQLAlchemy ORM models."""

from gapminer.models.agent import Agent
from gapminer.models.context import Context, ContextVersion
from gapminer.models.iteration import Iteration
from gapminer.models.result import Log, Result
from gapminer.models.run import Paper, Run

__all__ = [
    "Run",
    "Paper",
    "Iteration",
    "Agent",
    "Result",
    "Log",
    "Context",
    "ContextVersion",
]
