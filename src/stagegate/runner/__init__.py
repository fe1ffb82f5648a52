"""Subprocess runners.

- CommandRunner: async subprocess execution with timeout and output capture
- AgentCliImplementer: drives the implementation agent CLI for one task
"""

from stagegate.runner.agent import AgentCliImplementer, Implementer, ImplementationOutcome
from stagegate.runner.command import CommandResult, CommandRunner

__all__ = [
    "AgentCliImplementer",
    "Implementer",
    "ImplementationOutcome",
    "CommandResult",
    "CommandRunner",
]
