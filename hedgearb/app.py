"""
Task supervision: feeds, evaluation, event bus and monitor run side by side.

If any task dies with an error, its siblings are stopped and cancelled so the
process never keeps trading on half of its inputs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from hedgearb.core.event_bus import EventBus
from hedgearb.engine import ArbitrageEngine
from hedgearb.market_data.feeds import FeedAdapter
from hedgearb.monitoring.dashboard import Dashboard

log = logging.getLogger("hedgearb")


class TaskRunner:
    def __init__(self, name: str, factory: Callable[[], Awaitable[None]], stop: Callable[[], None]) -> None:
        self.name = name
        self._factory = factory
        self._stop = stop
        self.task: asyncio.Task | None = None
        self.error: Exception | None = None

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self._factory(), name=self.name)
        return self.task

    def stop(self) -> None:
        self._stop()
        if self.task and not self.task.done():
            self.task.cancel()


def build_runners(
    engine: ArbitrageEngine,
    feeds: Sequence[FeedAdapter],
    bus: EventBus,
    dashboard: Optional[Dashboard] = None,
) -> List[TaskRunner]:
    runners = [
        TaskRunner("event_bus", bus.start, bus.stop),
        TaskRunner("evaluation", engine.run_evaluation_loop, engine.stop),
    ]
    for feed in feeds:
        runners.append(TaskRunner(f"feed:{feed.venue}:{type(feed.codec).__name__}", feed.run, feed.stop))
    if dashboard is not None:
        runners.append(TaskRunner("dashboard", dashboard.run, dashboard.stop))
    return runners


async def run_all(
    engine: ArbitrageEngine,
    feeds: Sequence[FeedAdapter],
    bus: EventBus,
    dashboard: Optional[Dashboard] = None,
) -> None:
    runners = build_runners(engine, feeds, bus, dashboard)
    for r in runners:
        r.start()
    log.info(json.dumps({"event": "tasks_started", "tasks": [r.name for r in runners]}))
    try:
        async with asyncio.TaskGroup() as tg:
            for r in runners:
                tg.create_task(_watch(r, runners))
    finally:
        for r in runners:
            r.stop()
        await asyncio.gather(*(r.task for r in runners if r.task), return_exceptions=True)


async def _watch(runner: TaskRunner, runners: List[TaskRunner]) -> None:
    try:
        if runner.task:
            await runner.task
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        runner.error = exc
        log.error(json.dumps({"event": "task_crashed", "task": runner.name, "err": str(exc)}))
        for r in runners:
            if r is not runner:
                r.stop()
        raise
