"""Running a pool of transport workers behind one local endpoint."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from . import runstage
from .plan import SessionPlan
from .router import LocalRouter
from .runstage import Stage, StageError
from .transport_types import ClientConfig, Runner

_LOGGER = logging.getLogger(__name__)

WORKER_QUEUE_SIZE = 64


class Observer:
    """Records session health and logs runtime events."""

    def __init__(self, logger: logging.Logger | None = None, history: int = 256) -> None:
        self.logger = logger or logging.getLogger("turnproxy.observe")
        self.sessions_started = 0
        self.session_failures: list[tuple[str, bool]] = []
        self.transport_failures: Counter[str] = Counter()
        self.active_workers = 0
        self.events: deque[tuple[int, str, dict[str, Any]]] = deque(maxlen=history)

    def emit(self, level: int, event: str, **kwargs: Any) -> None:
        self.events.append((level, event, dict(kwargs)))
        fields = " ".join(f"{key}={value}" for key, value in kwargs.items())
        self.logger.log(level, "%s %s", event, fields)

    def record_session_start(self) -> None:
        self.sessions_started += 1

    def record_session_failure(self, stage: str, startup: bool) -> None:
        self.session_failures.append((stage, startup))

    def record_transport_failure(self, stage: str) -> None:
        self.transport_failures[stage] += 1

    def set_active_workers(self, count: int) -> None:
        self.active_workers = count


def stage_string(err: BaseException | None) -> str:
    """Name of the stage carried by ``err``, or ``runtime``."""
    stage = runstage.from_error(err)
    return "runtime" if stage is None else stage.value


@dataclass
class _WorkerState:
    generation: int = 0
    restarts: int = 0
    ready: bool = False


@dataclass(frozen=True)
class _Ready:
    index: int
    generation: int
    outbound: asyncio.Queue


@dataclass(frozen=True)
class _Result:
    index: int
    generation: int
    error: BaseException | None


@dataclass(frozen=True)
class _Restart:
    index: int


async def run_supervised_session(
    local_endpoint: Any,
    base_config: ClientConfig,
    new_runner: Callable[[ClientConfig], Runner],
    plan: SessionPlan,
    observer: Observer | None = None,
) -> None:
    """Run ``plan.connections`` workers, restarting failed ones within budget.

    Returns when the router stops without error; raises the session's failure.
    Cancelling the caller stops every worker.
    """
    logger = base_config.logger or _LOGGER
    observer = observer or Observer(logger)
    router = LocalRouter(local_endpoint, logger)
    events: asyncio.Queue = asyncio.Queue()
    states = [_WorkerState() for _ in range(plan.connections)]
    tasks: set[asyncio.Future] = set()

    def spawn(coro: Any) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    def start_worker(index: int, restarting: bool) -> None:
        state = states[index]
        state.generation += 1
        generation = state.generation
        outbound: asyncio.Queue = asyncio.Queue(maxsize=WORKER_QUEUE_SIZE)
        previous_ready = base_config.hooks.on_ready

        def on_ready() -> None:
            if previous_ready is not None:
                previous_ready()
            events.put_nowait(_Ready(index, generation, outbound))

        worker_logger = logging.LoggerAdapter(logger, {"worker": index, "generation": generation})
        cfg = base_config.replace(
            worker_index=index,
            outbound=outbound,
            inbound=router.deliver,
            logger=worker_logger,
            hooks=dataclasses.replace(base_config.hooks, on_ready=on_ready),
        )
        runner = new_runner(cfg)

        async def run_worker() -> None:
            if restarting:
                worker_logger.info("worker restart started (restart %d)", state.restarts)
            else:
                worker_logger.info("worker startup started")
            error: BaseException | None = None
            try:
                await runner.run()
            except Exception as exc:
                error = exc
            events.put_nowait(_Result(index, generation, error))

        spawn(run_worker())

    async def restart_later(index: int) -> None:
        await asyncio.sleep(plan.restart_backoff)
        events.put_nowait(_Restart(index))

    router_task = spawn(router.run())
    for index in range(plan.connections):
        start_worker(index, False)

    ready_workers = 0
    session_ready = False
    session_err: BaseException | None = None
    supervise = Stage.SESSION_SUPERVISE.value

    try:
        while True:
            getter = asyncio.ensure_future(events.get())
            try:
                done, _ = await asyncio.wait(
                    {getter, router_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not getter.done():
                    getter.cancel()

            if getter not in done:
                error = None if router_task.cancelled() else router_task.exception()
                if error is not None:
                    stage = Stage.FORWARDING_LOOP.value
                    observer.record_transport_failure(stage)
                    observer.record_session_failure(stage, not session_ready)
                    observer.emit(
                        logging.ERROR, "runtime_failure", stage=stage, result="failed", error=error
                    )
                    session_err = runstage.wrap(Stage.FORWARDING_LOOP, error)
                break

            match getter.result():
                case _Ready(index=index, generation=generation, outbound=outbound):
                    state = states[index]
                    if state.generation != generation or state.ready:
                        continue
                    state.ready = True
                    ready_workers += 1
                    router.set_ready(index, outbound)
                    observer.set_active_workers(ready_workers)
                    logger.info(
                        "session worker %d ready (%d/%d)", index, ready_workers, plan.connections
                    )
                    observer.emit(
                        logging.INFO,
                        "worker_ready",
                        stage=supervise,
                        result="ready",
                        worker=index,
                        ready_workers=ready_workers,
                        connections=plan.connections,
                    )
                    if not session_ready and ready_workers == plan.connections:
                        session_ready = True
                        observer.record_session_start()
                        observer.emit(
                            logging.INFO,
                            "runtime_ready",
                            stage=supervise,
                            result="succeeded",
                            connections=plan.connections,
                        )
                        logger.info("supervised session ready (%d connections)", plan.connections)

                case _Result(index=index, generation=generation, error=error):
                    state = states[index]
                    if state.generation != generation:
                        continue
                    was_ready = state.ready
                    if was_ready:
                        ready_workers -= 1
                        state.ready = False
                        router.remove(index)
                        observer.set_active_workers(ready_workers)

                    if error is None:
                        cause = RuntimeError(f"worker {index} stopped without error")
                        observer.record_transport_failure(supervise)
                        observer.record_session_failure(supervise, not session_ready)
                        observer.emit(
                            logging.ERROR,
                            "runtime_failure",
                            stage=supervise,
                            result="failed",
                            worker=index,
                            error=cause,
                        )
                        session_err = StageError(Stage.SESSION_SUPERVISE, cause)
                        break

                    if not was_ready:
                        stage = stage_string(error)
                        observer.record_transport_failure(stage)
                        observer.record_session_failure(stage, True)
                        observer.emit(
                            logging.ERROR,
                            "runtime_failure",
                            stage=stage,
                            result="failed",
                            worker=index,
                            error=error,
                        )
                        session_err = error
                        break

                    if state.restarts < plan.max_worker_restarts:
                        state.restarts += 1
                        stage = stage_string(error)
                        observer.record_transport_failure(stage)
                        observer.emit(
                            logging.WARNING,
                            "worker_restart_scheduled",
                            stage=stage,
                            result="retrying",
                            worker=index,
                            restart=state.restarts,
                            backoff=plan.restart_backoff,
                            error=error,
                        )
                        logger.warning(
                            "worker %d failed; scheduling restart %d after %ss: %s",
                            index,
                            state.restarts,
                            plan.restart_backoff,
                            error,
                        )
                        spawn(restart_later(index))
                        continue

                    cause = RuntimeError(
                        f"worker {index} exhausted restart budget after "
                        f"{state.restarts} restart(s): {error}"
                    )
                    cause.__cause__ = error
                    observer.record_transport_failure(supervise)
                    observer.record_session_failure(supervise, False)
                    observer.emit(
                        logging.ERROR,
                        "runtime_failure",
                        stage=supervise,
                        result="failed",
                        worker=index,
                        restarts=state.restarts,
                        error=cause,
                    )
                    session_err = StageError(Stage.SESSION_SUPERVISE, cause)
                    break

                case _Restart(index=index):
                    start_worker(index, True)
    finally:
        pending = list(tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        observer.set_active_workers(0)

    if session_err is not None:
        raise session_err