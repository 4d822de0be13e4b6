from roundmirror.models import RoundRecord
from roundmirror.services.rounds.modes import MODES
from roundmirror.services.rounds.reconciler import StateReconciler
from roundmirror.services.rounds.events import RoundEvent
from roundmirror.services.rounds.timer import TimerEngine, remaining_ms, urgency_for


def test_remaining_is_deadline_minus_now_clamped():
    assert remaining_ms(5000, 1000) == 4000
    assert remaining_ms(5000, 5000) == 0
    assert remaining_ms(5000, 9000) == 0
    assert remaining_ms(None, 1000) == 0


def test_countdown_strictly_decreases_until_zero(clock):
    timer = TimerEngine(clock)
    timer.set_deadline('betting', clock.now_ms() + 1000)
    seen = []
    for _ in range(15):
        seen.append(timer.tick().remaining_ms)
        clock.advance(100)
    positives = [ms for ms in seen if ms > 0]
    assert positives == sorted(positives, reverse=True)
    assert len(set(positives)) == len(positives)
    assert seen[-5:] == [0, 0, 0, 0, 0]


def test_missed_ticks_do_not_drift(clock):
    timer = TimerEngine(clock)
    timer.set_deadline('betting', clock.now_ms() + 10000)
    clock.advance(7350)
    state = timer.tick()
    assert state.remaining_ms == 2650
    assert state.seconds == 2


def test_urgency_levels():
    assert urgency_for(120000) == 'normal'
    assert urgency_for(60000) == 'warning'
    assert urgency_for(30000) == 'danger'
    assert urgency_for(10000) == 'critical'
    assert urgency_for(400) == 'critical'
    assert urgency_for(0) == 'expired'


def test_phase_change_recomputes_immediately(clock):
    now = clock.now_ms()
    record = RoundRecord(round_id='r1', phase='betting',
                         deadlines={'betting': now + 5000, 'locked': now + 65000})
    timer = TimerEngine(clock)
    assert timer.update(record).remaining_ms == 5000
    record.phase = 'locked'
    state = timer.update(record)
    assert state.phase == 'locked'
    assert state.remaining_ms == 65000
    assert state.urgency == 'normal'


def test_phase_without_deadline_reads_zero(clock):
    timer = TimerEngine(clock)
    state = timer.update(RoundRecord(round_id='r1', phase='settled'))
    assert state.remaining_ms == 0
    assert state.expired


def test_unreadable_clock_reads_zero(clock):
    timer = TimerEngine(clock)
    timer.set_deadline('betting', clock.now_ms() + 5000)
    clock.available = False
    assert timer.tick().remaining_ms == 0


def test_listeners_and_stop(clock):
    timer = TimerEngine(clock)
    changes = []
    timer.on_change(changes.append)
    timer.set_deadline('betting', clock.now_ms() + 3000)
    clock.advance(1000)
    timer.tick()
    assert [c.remaining_ms for c in changes] == [3000, 2000]
    timer.stop()
    clock.advance(500)
    assert timer.tick().remaining_ms == 0
    assert len(changes) == 2
    assert timer.stopped


def test_lock_deadline_reached_then_locked_event_applies(clock):
    now = clock.now_ms()
    reconciler = StateReconciler(MODES['prediction'], clock)
    timer = TimerEngine(clock)
    reconciler.subscribe(timer.update)
    reconciler.apply_snapshot(RoundRecord(round_id='r1', phase='betting', deadlines={'betting': now + 5000}))
    clock.set(now + 5000)
    assert timer.tick().remaining_ms == 0
    assert reconciler.apply_event(RoundEvent(type='round_locked', round_id='r1', phase='locked'))
    assert reconciler.record.phase == 'locked'
