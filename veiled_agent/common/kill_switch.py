"""
Global settlement kill switch.

Halting is checked at the settlement boundary, immediately before any
transaction is built, so flipping it never interrupts a call in flight.

Sources (first hit wins):
- EXECUTION_HALTED=1|true|yes|on
- EXECUTION_HALTED_FILE=<path> whose first line is truthy (mounted config
  that can change without a restart)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

KILL_SWITCH_ENV = "EXECUTION_HALTED"
KILL_SWITCH_FILE_ENV = "EXECUTION_HALTED_FILE"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class ExecutionHaltedError(RuntimeError):
    """
    Settlement refused because the kill switch is on. Nothing was sent.
    """


@dataclass(frozen=True)
class KillSwitchState:
    halted: bool
    source: Optional[str] = None


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def get_kill_switch_state() -> KillSwitchState:
    if _truthy(os.getenv(KILL_SWITCH_ENV)):
        return KillSwitchState(True, f"env:{KILL_SWITCH_ENV}")

    path = (os.getenv(KILL_SWITCH_FILE_ENV) or "").strip()
    if path:
        try:
            lines = Path(path).read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError:
            # A missing or unreadable flag file does not halt.
            return KillSwitchState(False)
        if lines and _truthy(lines[0]):
            return KillSwitchState(True, f"file:{path}")

    return KillSwitchState(False)


def require_execution_allowed(*, operation: str = "settlement") -> None:
    state = get_kill_switch_state()
    if state.halted:
        raise ExecutionHaltedError(
            f"Settlement halted via {state.source}; refusing {operation}. "
            f"Clear {KILL_SWITCH_ENV} or the file named by {KILL_SWITCH_FILE_ENV} to resume."
        )
