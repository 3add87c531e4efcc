from __future__ import annotations

import time
import tracemalloc
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

import structlog

from snaptree import events as ev
from snaptree.events import EventEmitter
from snaptree.exceptions import CancelledError, PipelineError, SecretsDetectedError, ValidationError
from snaptree.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from snaptree.models import PipelineContext

PASSTHROUGH_ERRORS = (CancelledError, SecretsDetectedError)


@runtime_checkable
class Stage(Protocol):
    """Contract of a pipeline stage.

    ``process`` is required. ``on_init``, ``validate`` and ``on_error`` are
    optional and may be None: ``on_init(context)`` runs once before the first
    stage, ``validate(context)`` runs before ``process`` and ``on_error(error,
    context)`` may return a substitute context to recover from a failure.
    """

    name: str
    on_init: Callable[[PipelineContext], None] | None
    validate: Callable[[PipelineContext], bool | None] | None
    on_error: Callable[[Exception, PipelineContext], PipelineContext | None] | None

    def process(self, context: PipelineContext) -> PipelineContext: ...


class BaseStage(ABC):
    """Convenience base for stages; optional hooks default to None."""

    name: ClassVar[str] = "stage"
    on_init: Callable[[PipelineContext], None] | None = None
    validate: Callable[[PipelineContext], bool | None] | None = None
    on_error: Callable[[Exception, PipelineContext], PipelineContext | None] | None = None

    @abstractmethod
    def process(self, context: PipelineContext) -> PipelineContext:
        """Transform the context and return it (same object or a new one)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


@dataclass(frozen=True)
class StageTiming:
    """Outcome of one stage execution."""

    stage: str
    duration_ms: float
    input_size: int
    output_size: int
    memory_delta: int
    recovered: bool = False


def _memory_in_use() -> int:
    return tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0


def _file_count(context: PipelineContext) -> int:
    return len(context.files)


class Pipeline:
    """Run an ordered list of stages over a shared context, one stage at a time.

    Example:
        >>> pipeline = Pipeline([DiscoveryStage(), SortStage(sort_by="path")])
        >>> pipeline.events.on(ev.STAGE_COMPLETE, print)
        >>> context = pipeline.run(PipelineContext(base_path=Path(".")))
    """

    def __init__(
        self,
        stages: Sequence[Stage] | None = None,
        *,
        events: EventEmitter | None = None,
        trace_memory: bool = False,
    ) -> None:
        self.stages: list[Stage] = list(stages or [])
        self.events = events if events is not None else EventEmitter()
        self.trace_memory = trace_memory
        self.timings: list[StageTiming] = []

    def _init_stages(self, context: PipelineContext) -> None:
        for stage in self.stages:
            if stage.on_init is None:
                continue
            try:
                stage.on_init(context)
            except Exception as exc:  # noqa: BLE001
                logger.warning("stage_init_failed", stage=stage.name, error=str(exc))

    def _run_stage(self, stage: Stage, context: PipelineContext) -> PipelineContext:
        if stage.validate is not None and stage.validate(context) is False:
            raise ValidationError(field=stage.name, message=f"Stage {stage.name} rejected its input")
        return stage.process(context)

    def run(self, context: PipelineContext) -> PipelineContext:
        """Execute every stage in order.

        Args:
            context: The initial work item.

        Returns:
            PipelineContext: the context produced by the last stage.

        Raises:
            CancelledError: If the operation's token was cancelled.
            SecretsDetectedError: If the secrets guard runs in fail-on-secrets mode.
            PipelineError: If a stage fails without recovering; the original error is the cause.
        """
        if context.events is None:
            context.events = self.events
        started_tracing = False
        if self.trace_memory and not tracemalloc.is_tracing():
            tracemalloc.start()
            started_tracing = True

        self.timings = []
        run_start = time.perf_counter()
        self.events.emit(ev.PIPELINE_START, {"input": str(context.base_path), "stages": len(self.stages)})
        logger.info("pipeline_start", base_path=str(context.base_path), stages=len(self.stages))
        self._init_stages(context)

        try:
            for stage in self.stages:
                context.check_cancelled()
                context = self._execute(stage, context)
        except Exception as exc:
            total_ms = (time.perf_counter() - run_start) * 1000
            self.events.emit(ev.PIPELINE_ERROR, {"error": exc, "duration_ms": total_ms})
            logger.error("pipeline_failed", error=type(exc).__name__, duration_ms=round(total_ms, 2))
            raise
        finally:
            if started_tracing:
                tracemalloc.stop()

        total_ms = (time.perf_counter() - run_start) * 1000
        stats = {
            "duration_ms": total_ms,
            "stages": len(self.stages),
            "file_count": _file_count(context),
            "timings": [t.__dict__ for t in self.timings],
        }
        self.events.emit(ev.PIPELINE_COMPLETE, {"result": context, "stats": stats})
        logger.info("pipeline_complete", duration_ms=round(total_ms, 2), file_count=_file_count(context))
        return context

    def _execute(self, stage: Stage, context: PipelineContext) -> PipelineContext:
        structlog.contextvars.bind_contextvars(stage=stage.name)
        try:
            return self._execute_bound(stage, context)
        finally:
            structlog.contextvars.unbind_contextvars("stage")

    def _execute_bound(self, stage: Stage, context: PipelineContext) -> PipelineContext:
        input_size = _file_count(context)
        memory_before = _memory_in_use()
        start = time.perf_counter()
        self.events.emit(ev.STAGE_START, {"stage": stage.name, "input_size": input_size})
        try:
            result = self._run_stage(stage, context)
        except PASSTHROUGH_ERRORS:
            self.events.emit(ev.STAGE_ERROR, {"stage": stage.name, "recoverable": False})
            raise
        except Exception as exc:
            recovered = self._recover(stage, exc, context)
            if recovered is None:
                self.events.emit(ev.STAGE_ERROR, {"stage": stage.name, "error": exc})
                logger.error("stage_failed", error=str(exc))
                raise PipelineError(stage=stage.name, message=f"Stage {stage.name} failed: {exc}") from exc
            duration_ms = (time.perf_counter() - start) * 1000
            self._record(stage, duration_ms, input_size, recovered, memory_before, recovered=True)
            self.events.emit(ev.STAGE_RECOVER, {"stage": stage.name, "error": exc, "duration_ms": duration_ms})
            logger.warning("stage_recovered", error=str(exc))
            return recovered

        duration_ms = (time.perf_counter() - start) * 1000
        timing = self._record(stage, duration_ms, input_size, result, memory_before)
        self.events.emit(ev.STAGE_COMPLETE, {"stage": stage.name, **timing.__dict__})
        logger.info(
            "stage_complete",
            duration_ms=round(duration_ms, 2),
            input_size=timing.input_size,
            output_size=timing.output_size,
            memory_delta=timing.memory_delta,
        )
        return result

    def _recover(self, stage: Stage, error: Exception, context: PipelineContext) -> PipelineContext | None:
        if stage.on_error is None:
            return None
        try:
            return stage.on_error(error, context)
        except Exception as exc:  # noqa: BLE001
            logger.error("stage_recovery_failed", error=str(exc))
            return None

    def _record(
        self,
        stage: Stage,
        duration_ms: float,
        input_size: int,
        result: PipelineContext,
        memory_before: int,
        *,
        recovered: bool = False,
    ) -> StageTiming:
        timing = StageTiming(
            stage=stage.name,
            duration_ms=duration_ms,
            input_size=input_size,
            output_size=_file_count(result),
            memory_delta=_memory_in_use() - memory_before,
            recovered=recovered,
        )
        self.timings.append(timing)
        result.metrics.stage_durations[stage.name] = duration_ms
        return timing


def run_stages(
    context: PipelineContext,
    stages: Sequence[Stage],
    listeners: dict[str, Callable[[dict[str, Any]], None]] | None = None,
) -> PipelineContext:
    """Build a pipeline for ``stages``, attach ``listeners`` and run it once.

    Listeners are removed when the run ends, whatever the outcome.
    """
    pipeline = Pipeline(stages, events=context.events)
    registered = [(name, pipeline.events.on(name, fn)) for name, fn in (listeners or {}).items()]
    try:
        return pipeline.run(context)
    finally:
        for name, fn in registered:
            pipeline.events.off(name, fn)
