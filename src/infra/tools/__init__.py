"""Tools package: command building, process supervision, cleanup and environment."""

from src.infra.tools.cleanup import CleanupHook
from src.infra.tools.command_builder import CommandSpec
from src.infra.tools.process_supervisor import ProcessSupervisor

__all__ = [
    "CleanupHook",
    "CommandSpec",
    "ProcessSupervisor",
]
