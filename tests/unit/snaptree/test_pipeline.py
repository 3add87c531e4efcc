from pathlib import Path
from typing import Any

import pytest

from snaptree import events as ev
from snaptree.concurrency import CancellationToken
from snaptree.events import EventEmitter
from snaptree.exceptions import CancelledError, PipelineError, ValidationError
from snaptree.models import FileDescriptor, PipelineContext
from snaptree.pipeline import BaseStage, Pipeline, Stage, run_stages


class AppendStage(BaseStage):
    """Test stage adding one descriptor."""

    def __init__(self, name: str, path: str) -> None:
        self.name = name
        self.path = path

    def process(self, context: PipelineContext) -> PipelineContext:
        context.files.append(FileDescriptor(path=self.path, absolute_path=context.base_path / self.path))
        return context


class FailingStage(BaseStage):
    name = "failing"

    def __init__(self, *, recover: bool = False) -> None:
        if recover:
            self.on_error = self._recover

    def _recover(self, error: Exception, context: PipelineContext) -> PipelineContext:
        context.stats["recovered_from"] = str(error)
        return context

    def process(self, context: PipelineContext) -> PipelineContext:
        msg = "boom"
        raise RuntimeError(msg)


class RejectingStage(BaseStage):
    name = "rejecting"

    def validate(self, context: PipelineContext) -> bool:
        return False

    def process(self, context: PipelineContext) -> PipelineContext:
        return context


def _record(emitter: EventEmitter, names: list[str]) -> list[tuple[str, Any]]:
    seen: list[tuple[str, Any]] = []
    for name in names:
        emitter.on(name, lambda payload, name=name: seen.append((name, payload.get("stage"))))
    return seen


@pytest.mark.unit
def test_stages_run_in_order_and_emit_events(tmp_path: Path) -> None:
    pipeline = Pipeline([AppendStage("one", "a.txt"), AppendStage("two", "b.txt")])
    seen = _record(pipeline.events, [ev.PIPELINE_START, ev.STAGE_START, ev.STAGE_COMPLETE, ev.PIPELINE_COMPLETE])

    context = pipeline.run(PipelineContext(base_path=tmp_path))

    assert [f.path for f in context.files] == ["a.txt", "b.txt"]
    assert seen == [
        (ev.PIPELINE_START, None),
        (ev.STAGE_START, "one"),
        (ev.STAGE_COMPLETE, "one"),
        (ev.STAGE_START, "two"),
        (ev.STAGE_COMPLETE, "two"),
        (ev.PIPELINE_COMPLETE, None),
    ]
    assert [t.stage for t in pipeline.timings] == ["one", "two"]
    assert set(context.metrics.stage_durations) == {"one", "two"}


@pytest.mark.unit
def test_stages_satisfy_the_protocol() -> None:
    assert isinstance(AppendStage("one", "a"), Stage)
    assert AppendStage("one", "a").on_init is None


@pytest.mark.unit
def test_failure_without_recovery_wraps_the_cause(tmp_path: Path) -> None:
    pipeline = Pipeline([FailingStage(), AppendStage("never", "x")])
    errors = _record(pipeline.events, [ev.STAGE_ERROR, ev.PIPELINE_ERROR])

    with pytest.raises(PipelineError) as excinfo:
        pipeline.run(PipelineContext(base_path=tmp_path))

    assert excinfo.value.stage == "failing"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert errors == [(ev.STAGE_ERROR, "failing"), (ev.PIPELINE_ERROR, None)]


@pytest.mark.unit
def test_recovery_hook_substitutes_the_context(tmp_path: Path) -> None:
    pipeline = Pipeline([FailingStage(recover=True), AppendStage("after", "a.txt")])
    recovered = _record(pipeline.events, [ev.STAGE_RECOVER])

    context = pipeline.run(PipelineContext(base_path=tmp_path))

    assert context.stats["recovered_from"] == "boom"
    assert [f.path for f in context.files] == ["a.txt"]
    assert recovered == [(ev.STAGE_RECOVER, "failing")]
    assert pipeline.timings[0].recovered


@pytest.mark.unit
def test_rejected_validation_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(PipelineError) as excinfo:
        Pipeline([RejectingStage()]).run(PipelineContext(base_path=tmp_path))

    assert isinstance(excinfo.value.__cause__, ValidationError)


@pytest.mark.unit
def test_cancellation_propagates_unwrapped(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancelledError):
        Pipeline([AppendStage("one", "a.txt")]).run(PipelineContext(base_path=tmp_path, token=token))


@pytest.mark.unit
def test_on_init_failures_are_logged_not_raised(tmp_path: Path) -> None:
    stage = AppendStage("one", "a.txt")

    def broken_init(context: PipelineContext) -> None:
        msg = "init failed"
        raise RuntimeError(msg)

    stage.on_init = broken_init
    context = Pipeline([stage]).run(PipelineContext(base_path=tmp_path))

    assert len(context.files) == 1


@pytest.mark.unit
def test_run_stages_removes_listeners_afterwards(tmp_path: Path) -> None:
    emitter = EventEmitter()
    completed: list[str] = []

    run_stages(
        PipelineContext(base_path=tmp_path, events=emitter),
        [AppendStage("one", "a.txt")],
        {ev.STAGE_COMPLETE: lambda p: completed.append(p["stage"])},
    )

    assert completed == ["one"]
    assert emitter.listener_count(ev.STAGE_COMPLETE) == 0
