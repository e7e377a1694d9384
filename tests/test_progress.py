from typing import List

from cv_rank.progress import ProgressBroadcaster, is_primary_artifact
from cv_rank.schemas import ProgressEvent, ProgressStatus
from tests.fakes import progress


def _collect(broadcaster: ProgressBroadcaster) -> List[ProgressEvent]:
    seen: List[ProgressEvent] = []
    broadcaster.subscribe(seen.append)
    return seen


def test_primary_artifact_names() -> None:
    assert is_primary_artifact("model.safetensors")
    assert is_primary_artifact("onnx/model_quantized.onnx")
    assert not is_primary_artifact("config.json")
    assert not is_primary_artifact("tokenizer.json")


def test_auxiliary_files_never_reach_subscribers() -> None:
    broadcaster = ProgressBroadcaster()
    seen = _collect(broadcaster)
    sequence = [
        progress("initiate", "config.json", 0),
        progress("progress", "config.json", 100),
        progress("initiate", "model.safetensors", 0),
        progress("download", "model.safetensors", 0),
        progress("progress", "model.safetensors", 30),
        progress("initiate", "tokenizer.json", 0),
        progress("progress", "tokenizer.json", 100),
        progress("progress", "model.safetensors", 70),
        progress("progress", "model.safetensors", 100),
        progress("ready", "sentence-transformers/all-MiniLM-L6-v2", 100),
    ]
    for event in sequence:
        broadcaster.publish(event)

    assert all(e.file == "model.safetensors" for e in seen[:-1])
    percents = [e.percent for e in seen]
    assert percents == sorted(percents)
    assert seen[-1].status is ProgressStatus.READY
    assert seen[-1].percent == 100


def test_regressing_percent_is_suppressed() -> None:
    broadcaster = ProgressBroadcaster()
    seen = _collect(broadcaster)
    for percent in (10, 40, 20, 60):
        broadcaster.publish(progress("progress", "model.safetensors", percent))
    assert [e.percent for e in seen] == [10, 40, 60]


def test_new_load_sequence_restarts_after_terminal_event() -> None:
    broadcaster = ProgressBroadcaster()
    seen = _collect(broadcaster)
    broadcaster.publish(progress("progress", "model.safetensors", 90))
    broadcaster.publish(progress("ready", "model-a", 100))
    broadcaster.publish(progress("initiate", "pytorch_model.bin", 0))
    broadcaster.publish(progress("progress", "pytorch_model.bin", 5))
    assert [e.percent for e in seen] == [90, 100, 0, 5]


def test_unsubscribe_and_failing_listener() -> None:
    broadcaster = ProgressBroadcaster()
    seen: List[ProgressEvent] = []

    def broken(event: ProgressEvent) -> None:
        raise RuntimeError("listener bug")

    broadcaster.subscribe(broken)
    unsubscribe = broadcaster.subscribe(seen.append)
    broadcaster.publish(progress("progress", "model.safetensors", 50))
    assert len(seen) == 1

    unsubscribe()
    broadcaster.publish(progress("progress", "model.safetensors", 60))
    assert len(seen) == 1
    assert len(broadcaster) == 1


def test_custom_primary_files() -> None:
    broadcaster = ProgressBroadcaster(primary_files=["weights.bin"])
    seen = _collect(broadcaster)
    broadcaster.publish(progress("progress", "model.safetensors", 50))
    broadcaster.publish(progress("progress", "weights.bin", 50))
    assert [e.file for e in seen] == ["weights.bin"]
