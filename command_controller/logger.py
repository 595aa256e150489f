"""Logger used by the action router and the command broker."""

from __future__ import annotations

from utils.log_utils import log


class CommandLogger:
    def __init__(self, system: str = "ROUTER") -> None:
        self.system = system

    def info(self, message: str) -> None:
        log(self.system, message)

    def warn(self, message: str) -> None:
        log(self.system, message, "WARN")

    def error(self, message: str) -> None:
        log(self.system, message, "ERROR")
