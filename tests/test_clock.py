import pytest

from clock import SessionClock, format_elapsed


@pytest.mark.parametrize("seconds,expected", [
    (0, "00:00:00"),
    (59, "00:00:59"),
    (61, "00:01:01"),
    (3600, "01:00:00"),
    (86399, "23:59:59"),
    (None, "00:00:00"),
    (-5, "00:00:00"),
])
def test_format_elapsed(seconds, expected):
    assert format_elapsed(seconds) == expected


def test_ticks_once_per_second(loop):
    ticks = []
    clock = SessionClock(loop, on_tick=ticks.append)
    clock.start()
    loop.advance(0.5)
    assert clock.elapsed_seconds == 0
    loop.advance(0.5)
    assert clock.elapsed_seconds == 1
    loop.advance(4)
    assert clock.elapsed_seconds == 5
    assert ticks == [1, 2, 3, 4, 5]


def test_start_and_stop_are_idempotent(loop):
    clock = SessionClock(loop)
    clock.start()
    clock.start()
    loop.advance(3)
    assert clock.elapsed_seconds == 3
    assert loop.scheduled() == 1

    clock.stop()
    clock.stop()
    assert not clock.running
    assert loop.scheduled() == 0


def test_no_tick_after_stop(loop):
    clock = SessionClock(loop)
    clock.start()
    loop.advance(2.5)
    clock.stop()
    loop.advance(10)
    assert clock.elapsed_seconds == 2


def test_elapsed_never_decreases_across_restarts(loop):
    clock = SessionClock(loop)
    seen = []
    for _ in range(3):
        clock.start()
        loop.advance(2)
        clock.stop()
        loop.advance(1)
        seen.append(clock.elapsed_seconds)
    assert seen == [2, 4, 6]
    assert seen == sorted(seen)


def test_reset_zeroes_and_stops(loop):
    clock = SessionClock(loop)
    clock.start()
    loop.advance(7)
    clock.reset()
    assert clock.elapsed_seconds == 0
    assert not clock.running
    loop.advance(5)
    assert clock.elapsed_seconds == 0


def test_tick_handler_errors_do_not_stop_the_clock(loop):
    def boom(_):
        raise RuntimeError("display gone")

    clock = SessionClock(loop, on_tick=boom)
    clock.start()
    loop.advance(3)
    assert clock.elapsed_seconds == 3
