"""Deciding, per intercepted call, whether to inject a fault, and logging it."""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence, TextIO

from .triggers import Trigger, create_trigger

logger = logging.getLogger(__name__)

LOGFILE = "inject.log"
"""Human readable log file, overwritten at each run."""
REPLAYFILE = "replay.xml"
"""Machine readable log used to replay an injection run."""
MAX_TRIGGER_ARGS = 6


@dataclass
class TriggerDesc:
    """A trigger declared in the plan; ``trigger`` is created on first use."""

    id: str
    tclass: str
    init: str = ""
    trigger: Trigger | None = None


@dataclass
class FunctionInfo:
    """One fault for an intercepted function, guarded by all of its triggers."""

    function_name: str
    return_value: int
    errno_value: int = 0
    call_original: int = 0
    argc: int = 0
    triggers: list[TriggerDesc] = field(default_factory=list)


@dataclass(frozen=True)
class Action:
    """What the interception stub should do for a call."""

    call_original: bool = True
    return_error: bool = False
    return_code: int = 0
    return_errno: int = 0


def _parse_init(init: str) -> ET.Element | None:
    if not init:
        return None
    try:
        return ET.fromstring(init)
    except ET.ParseError:
        logger.warning("unable to parse trigger arguments: %s", init)
        return None


def _instantiate(desc: TriggerDesc) -> Trigger | None:
    if desc.trigger is None:
        try:
            trigger = create_trigger(desc.tclass)
        except KeyError:
            return None
        trigger.init(_parse_init(desc.init))
        desc.trigger = trigger
    return desc.trigger


def _evaluate(trigger: Trigger, entry: FunctionInfo, function_name: str, args: Sequence[Any]) -> bool:
    argc = entry.argc
    if argc in (-1, 0):
        return bool(trigger.eval(entry.function_name))
    if 1 <= argc <= MAX_TRIGGER_ARGS:
        padded = list(args[:argc]) + [0] * max(0, argc - len(args))
        return bool(trigger.eval(entry.function_name, *padded))
    logger.warning(
        "A maximum of %d arguments are supported in a trigger call (%s)",
        MAX_TRIGGER_ARGS,
        function_name,
    )
    return False


def determine_action(entries: Sequence[FunctionInfo], function_name: str, *args: Any) -> Action:
    """Return the action for a call to ``function_name`` with ``args``.

    An entry fires when every one of its triggers evaluates true (an entry
    without triggers always fires); the first entry that fires decides.
    The injected values are those of the first entry of ``entries``.
    """
    if not entries:
        return Action()
    for entry in entries:
        fired = True
        for desc in entry.triggers:
            trigger = _instantiate(desc)
            if trigger is None:
                logger.warning(
                    "Trigger class %s not found or not yet registered while intercepting %s",
                    desc.tclass,
                    entry.function_name,
                )
                return Action()
            fired = _evaluate(trigger, entry, function_name, args)
            if not fired:
                break
        if fired:
            first = entries[0]
            return Action(
                call_original=bool(first.call_original),
                return_error=True,
                return_code=first.return_value,
                return_errno=first.errno_value,
            )
    return Action()


class InjectionLog:
    """The human readable injection log and the replay plan of a run."""

    def __init__(self, log_path: str | Path = LOGFILE, replay_path: str | Path = REPLAYFILE) -> None:
        self._log: TextIO = open(log_path, "w", encoding="utf-8")
        self._replay: TextIO = open(replay_path, "w", encoding="utf-8")
        self._replay.write("<plan>\n")
        self._replay.flush()
        self.closed = False

    def __enter__(self) -> "InjectionLog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def record(self, function_name: str, action: Action, call_count: int) -> None:
        """Log an injected fault; actions that inject nothing are ignored."""
        if self.closed:
            raise ValueError("injection log is closed")
        if not action.return_error:
            return
        cpu = time.process_time_ns()
        seconds, nanoseconds = divmod(cpu, 1_000_000_000)
        self._log.write(
            f"[ {function_name}, {time.perf_counter_ns()} {seconds} {nanoseconds}] "
            f"Returning code {action.return_code}; setting errno to {action.return_errno}\n"
        )
        self._log.flush()
        self._replay.write(
            f'<function name="{function_name}" inject="{call_count}" '
            f'retval="{action.return_code}" errno="{action.return_errno}" '
            f'calloriginal="0" />\n'
        )
        self._replay.flush()

    def close(self) -> None:
        """Finish the replay plan and close both files."""
        if self.closed:
            return
        self._replay.write("</plan>\n")
        self._replay.close()
        self._log.close()
        self.closed = True