"""
Async stage graph for reconciliation passes.

A pass is a small DAG of named stages. Each stage gets the merged context of
its upstream stages and returns a dict that is merged for its dependents.
Stage callables may be plain functions or coroutines; only the ones doing
I/O need to be async.

A failing stage is recorded (status + error) and every stage depending on it
is skipped, so nothing downstream of a failure runs.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

StageResult = Union[dict[str, Any], None, Awaitable[Union[dict[str, Any], None]]]
StageFn = Callable[[dict[str, Any]], StageResult]
StageHook = Callable[[str], Union[None, Awaitable[None]]]


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Stage:
    name: str
    execute_fn: StageFn
    depends_on: list[str] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class StageGraph:
    """
    Usage:
        graph = StageGraph("reconcile")
        graph.add_stage("collect", collect)
        graph.add_stage("detect", detect, depends_on=["collect"])
        summary = await graph.run({"entity_id": "E1"})
    """

    def __init__(self, name: str):
        self.name = name
        self.stages: dict[str, Stage] = {}

    def add_stage(
        self,
        name: str,
        execute_fn: StageFn,
        depends_on: list[str] | None = None,
    ) -> StageGraph:
        if name in self.stages:
            raise ValueError(f"Duplicate stage name: {name}")
        self.stages[name] = Stage(name=name, execute_fn=execute_fn, depends_on=depends_on or [])
        return self

    def execution_order(self) -> list[str]:
        """Kahn's algorithm; ties keep insertion order."""
        in_degree = {name: 0 for name in self.stages}
        for stage in self.stages.values():
            for dep in stage.depends_on:
                if dep not in self.stages:
                    raise ValueError(f"Stage '{stage.name}' depends on unknown stage '{dep}'")
                in_degree[stage.name] += 1

        ready = deque(name for name, degree in in_degree.items() if degree == 0)
        order: list[str] = []
        while ready:
            current = ready.popleft()
            order.append(current)
            for name, stage in self.stages.items():
                if current in stage.depends_on:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        ready.append(name)

        if len(order) != len(self.stages):
            raise ValueError("Cycle detected in stage graph")
        return order

    async def run(
        self,
        initial_context: dict[str, Any] | None = None,
        on_stage_start: StageHook | None = None,
    ) -> dict[str, Any]:
        order = self.execution_order()
        context = dict(initial_context or {})
        summary: dict[str, Any] = {"pipeline": self.name, "stages": {}}

        logger.debug("Starting '%s' with %d stages", self.name, len(self.stages))

        for stage_name in order:
            stage = self.stages[stage_name]

            if any(self.stages[dep].status != StageStatus.SUCCESS for dep in stage.depends_on):
                stage.status = StageStatus.SKIPPED
                logger.warning("Skipping '%s': upstream stage did not succeed", stage_name)
                summary["stages"][stage_name] = {"status": stage.status.value}
                continue

            for dep in stage.depends_on:
                context.update(self.stages[dep].result)

            stage.status = StageStatus.RUNNING
            start = time.perf_counter()
            try:
                if on_stage_start is not None:
                    await _maybe_await(on_stage_start(stage_name))
                stage.result = await _maybe_await(stage.execute_fn(context)) or {}
                stage.status = StageStatus.SUCCESS
            except Exception as exc:
                stage.status = StageStatus.FAILED
                stage.error = f"{type(exc).__name__}: {exc}"
                logger.exception("Stage '%s' of '%s' failed", stage_name, self.name)
            finally:
                stage.duration_ms = (time.perf_counter() - start) * 1000

            summary["stages"][stage_name] = {
                "status": stage.status.value,
                "duration_ms": round(stage.duration_ms, 2),
                "error": stage.error,
            }

        succeeded = all(s.status == StageStatus.SUCCESS for s in self.stages.values())
        summary["status"] = "completed" if succeeded else "failed"
        return summary

    @property
    def failed_stage(self) -> Stage | None:
        for stage in self.stages.values():
            if stage.status == StageStatus.FAILED:
                return stage
        return None

    def result_of(self, stage_name: str) -> dict[str, Any]:
        return self.stages[stage_name].result

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stages": {name: {"depends_on": s.depends_on} for name, s in self.stages.items()},
        }
