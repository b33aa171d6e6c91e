from src.playback.stream_controller import StreamStatus
from tests.stubs import RecordingEngine, make_controller


def _playing(**kwargs):
    controller, sink, clock, statuses = make_controller(**kwargs)
    controller.initialize(RecordingEngine())
    controller.set_playing()
    return controller, sink, clock, statuses


def test_visibility_loss_pauses_after_delay():
    controller, sink, clock, _statuses = _playing(pause_delay_ms=2000)
    controller.set_visibility(False)
    clock.advance(1000)
    assert controller.get_status() is StreamStatus.PLAYING
    assert controller.has_pending_pause()
    clock.advance(1000)
    assert controller.get_status() is StreamStatus.PAUSED
    assert sink.count("pause") == 1
    assert controller.get_state()["paused_by_visibility"] is True
    assert not controller.has_pending_pause()


def test_visibility_return_cancels_scheduled_pause():
    controller, sink, clock, statuses = _playing(pause_delay_ms=2000)
    controller.set_visibility(False)
    clock.advance(1500)
    controller.set_visibility(True)
    clock.advance(1500)
    assert controller.get_status() is StreamStatus.PLAYING
    assert sink.count("pause") == 0
    assert statuses == [StreamStatus.LOADING, StreamStatus.PLAYING]
    assert clock.pending() == []


def test_auto_resume_after_visibility_pause():
    controller, sink, clock, _statuses = _playing(pause_delay_ms=1000, auto_resume=True)
    controller.set_visibility(False)
    clock.advance(1000)
    assert controller.get_status() is StreamStatus.PAUSED
    controller.set_visibility(True)
    assert controller.get_status() is StreamStatus.PLAYING
    assert sink.count("play") == 1
    assert controller.get_state()["paused_by_visibility"] is False


def test_no_auto_resume_when_disabled():
    controller, sink, clock, _statuses = _playing(pause_delay_ms=1000, auto_resume=False)
    controller.set_visibility(False)
    clock.advance(1000)
    controller.set_visibility(True)
    assert controller.get_status() is StreamStatus.PAUSED
    assert sink.count("play") == 0


def test_explicit_pause_is_not_auto_resumed():
    controller, sink, _clock, _statuses = _playing(pause_delay_ms=1000, auto_resume=True)
    controller.pause()
    controller.set_visibility(False)
    controller.set_visibility(True)
    assert controller.get_status() is StreamStatus.PAUSED
    assert sink.count("play") == 0


def test_explicit_pause_over_visibility_pause_blocks_auto_resume():
    controller, sink, clock, _statuses = _playing(pause_delay_ms=1000)
    controller.set_visibility(False)
    clock.advance(1000)
    controller.pause()
    controller.set_visibility(True)
    assert controller.get_status() is StreamStatus.PAUSED
    assert sink.count("play") == 0


def test_redundant_hide_keeps_original_deadline():
    controller, _sink, clock, _statuses = _playing(pause_delay_ms=2000)
    controller.set_visibility(False)
    clock.advance(1500)
    controller.set_visibility(False)
    assert len(clock.pending()) == 1
    clock.advance(500)
    assert controller.get_status() is StreamStatus.PAUSED


def test_pause_cancels_scheduled_pause():
    controller, sink, clock, statuses = _playing(pause_delay_ms=2000)
    controller.set_visibility(False)
    controller.pause()
    assert clock.pending() == []
    clock.advance(5000)
    assert sink.count("pause") == 1
    assert statuses.count(StreamStatus.PAUSED) == 1


def test_set_playing_after_pause_leaves_no_timer():
    controller, _sink, clock, _statuses = _playing(pause_delay_ms=2000)
    controller.pause()
    controller.set_playing()
    controller.set_visibility(False)
    controller.pause()
    controller.set_playing()
    assert clock.pending() == []
    clock.advance(3000)
    assert controller.get_status() is StreamStatus.PLAYING


def test_hide_while_loading_does_not_schedule():
    controller, _sink, clock, _statuses = make_controller(pause_delay_ms=1000)
    controller.initialize(RecordingEngine())
    controller.set_visibility(False)
    assert clock.pending() == []
    assert controller.is_visible() is False


def test_stale_timer_fire_is_ignored():
    controller, sink, clock, _statuses = _playing(pause_delay_ms=1000)
    controller.set_visibility(False)
    stale = clock.pending()[0]
    controller.set_visibility(True)
    # จำลอง timer ที่ถูก cancel ไม่ทันแล้วยัง fire (เช่นจาก thread อื่น)
    stale.fn()
    assert controller.get_status() is StreamStatus.PLAYING
    assert sink.count("pause") == 0


def test_rearm_after_cancel_uses_fresh_deadline():
    controller, _sink, clock, _statuses = _playing(pause_delay_ms=1000)
    controller.set_visibility(False)
    clock.advance(800)
    controller.set_visibility(True)
    controller.set_visibility(False)
    clock.advance(800)
    assert controller.get_status() is StreamStatus.PLAYING
    clock.advance(200)
    assert controller.get_status() is StreamStatus.PAUSED
