# Copyright (C) 2014 Anaconda, Inc
# SPDX-License-Identifier: BSD-3-Clause
"""
Build steps and the runner that executes them.

A recipe's build is an ordered sequence of tagged steps.  The runner gives
every variant the same treatment: one child process, the overlayed
environment passed explicitly, output captured, and the first non-zero exit
status ends the sequence with a :class:`BuildStepError`.
"""
from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from .exceptions import BuildStepError, RecipeError
from .utils import ensure_list, get_logger, run_captured, seconds2human

if TYPE_CHECKING:
    from typing import Iterable, Mapping

    from .config import Config

log = get_logger(__name__)


@dataclass(frozen=True)
class Configure:
    """Run the configure script; ``flags`` are passed through untouched."""

    flags: tuple[str, ...] = ()
    script: str = "./configure"

    def command(self, config: Config) -> list[str]:
        return [self.script, *self.flags]


@dataclass(frozen=True)
class Compile:
    args: tuple[str, ...] = ()

    def command(self, config: Config) -> list[str]:
        return [config.make, *self.args]


@dataclass(frozen=True)
class Install:
    args: tuple[str, ...] = ()

    def command(self, config: Config) -> list[str]:
        return [config.make, "install", *self.args]


@dataclass(frozen=True)
class Custom:
    argv: tuple[str, ...] = field(default=())

    def command(self, config: Config) -> list[str]:
        return list(self.argv)


Step = Union[Configure, Compile, Install, Custom]


def _strings(value, what):
    items = ensure_list(value, include_dict=False)
    if not all(isinstance(item, (str, int, float)) for item in items):
        raise RecipeError(f"{what} must be a list of strings, got {value!r}")
    return tuple(str(item) for item in items)


def parse_step(data) -> Step:
    """Turn one recipe entry such as ``{"make": ["-C", "lib"]}`` into a step."""
    if not isinstance(data, dict) or len(data) != 1:
        raise RecipeError(
            f"Each build step must be a mapping with exactly one key, got {data!r}"
        )
    kind, value = next(iter(data.items()))
    if kind == "configure":
        if isinstance(value, dict):
            return Configure(
                flags=_strings(value.get("flags"), "configure flags"),
                script=str(value.get("script", "./configure")),
            )
        return Configure(flags=_strings(value, "configure flags"))
    if kind == "make":
        return Compile(args=_strings(value, "make arguments"))
    if kind == "install":
        return Install(args=_strings(value, "install arguments"))
    if kind == "run":
        argv = shlex.split(value) if isinstance(value, str) else _strings(value, "run")
        if not argv:
            raise RecipeError("A 'run' step needs a command")
        return Custom(argv=tuple(argv))
    raise RecipeError(
        f"Unknown build step {kind!r}; expected one of configure, make, install, run"
    )


def parse_steps(data) -> tuple[Step, ...]:
    return tuple(parse_step(item) for item in ensure_list(data, include_dict=False))


def step_to_dict(step: Step) -> dict:
    if isinstance(step, Configure):
        if step.script != "./configure":
            return {"configure": {"script": step.script, "flags": list(step.flags)}}
        return {"configure": list(step.flags)}
    if isinstance(step, Compile):
        return {"make": list(step.args)}
    if isinstance(step, Install):
        return {"install": list(step.args)}
    return {"run": list(step.argv)}


@dataclass(frozen=True)
class StepResult:
    index: int
    command: tuple[str, ...]
    returncode: int
    output: str
    elapsed: float


@dataclass
class StepsResult:
    steps: list[StepResult] = field(default_factory=list)

    @property
    def elapsed(self) -> float:
        return sum(step.elapsed for step in self.steps)

    @property
    def output(self) -> str:
        return "".join(step.output for step in self.steps)


def run(
    steps: Iterable[Step],
    env: Mapping[str, str],
    cwd: str,
    config: Config,
    label: str = "build",
) -> StepsResult:
    """Execute ``steps`` in order in ``cwd`` with environment ``env``.

    Raises :class:`BuildStepError` for the first step that exits non-zero; no
    later step is started.
    """
    result = StepsResult()
    for index, step in enumerate(steps):
        command = step.command(config)
        log.info("%s step %d: %s", label, index, " ".join(command))
        start = time.time()
        try:
            returncode, output = run_captured(command, env=env, cwd=cwd)
        except OSError as e:
            # the executable itself could not be started
            raise BuildStepError(index, command, 127, str(e)) from e
        elapsed = time.time() - start
        if output:
            log.debug(output)
        if returncode != 0:
            raise BuildStepError(index, command, returncode, output)
        log.debug("%s step %d finished in %s", label, index, seconds2human(elapsed))
        result.steps.append(
            StepResult(index, tuple(command), returncode, output, elapsed)
        )
    return result
