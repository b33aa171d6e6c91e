import pytest

from src.playback.stream_controller import StreamStatus
from tests.stubs import RecordingEngine, make_controller


def _advance_to(controller, target):
    engine = RecordingEngine()
    if target in ("loading", "playing", "paused"):
        controller.initialize(engine)
    if target in ("playing", "paused"):
        controller.set_playing()
    if target == "paused":
        controller.pause()
    return engine


@pytest.mark.parametrize("target", ["idle", "loading", "playing", "paused"])
def test_destroy_from_any_state(target):
    controller, _sink, _clock, statuses = make_controller()
    engine = _advance_to(controller, target)
    controller.destroy()
    assert controller.get_status() is StreamStatus.DESTROYED
    assert statuses[-1] is StreamStatus.DESTROYED
    expected_destroys = 0 if target == "idle" else 1
    assert engine.destroy_calls == expected_destroys


def test_destroy_is_idempotent():
    controller, _sink, _clock, statuses = make_controller()
    engine = _advance_to(controller, "playing")
    controller.destroy()
    controller.destroy()
    assert engine.destroy_calls == 1
    assert statuses.count(StreamStatus.DESTROYED) == 1


def test_mutators_are_noops_after_destroy():
    controller, sink, clock, statuses = make_controller(pause_delay_ms=1000)
    _advance_to(controller, "playing")
    controller.destroy()
    calls_after_destroy = list(sink.calls)
    history = list(statuses)

    controller.set_playing()
    controller.pause()
    controller.resume()
    controller.set_visibility(False)
    controller.set_visibility(True)
    controller.initialize(RecordingEngine())
    clock.advance(5000)

    assert controller.get_status() is StreamStatus.DESTROYED
    assert sink.calls == calls_after_destroy
    assert statuses == history
    assert clock.pending() == []


def test_destroy_cancels_scheduled_pause():
    controller, sink, clock, statuses = make_controller(pause_delay_ms=1000)
    _advance_to(controller, "playing")
    controller.set_visibility(False)
    assert len(clock.pending()) == 1
    controller.destroy()
    assert clock.pending() == []
    clock.advance(2000)
    assert StreamStatus.PAUSED not in statuses


def test_destroy_detaches_sink_without_owning_it():
    controller, sink, _clock, _statuses = make_controller()
    _advance_to(controller, "playing")
    controller.destroy()
    assert sink.src == ""
    assert sink.calls[-2:] == ["pause", "load"]


def test_engine_destroy_error_is_contained():
    controller, _sink, _clock, _statuses = make_controller()
    engine = RecordingEngine(error=RuntimeError("hls gone"))
    controller.initialize(engine)
    controller.destroy()
    assert engine.destroy_calls == 1
    assert controller.get_status() is StreamStatus.DESTROYED
