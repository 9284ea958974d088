import json
import sys
import threading

import pytest

from constraints import Timetable
from models import SnapshotError, parse_snapshot
from solver import GenerationCancelled, generate_timetable
from validation import validate_timetable


def placements(timetable: dict) -> dict:
    """lesson id -> sorted list of (classGroup, day, period) it occupies."""
    found = {}
    for cg_id, days in timetable.items():
        for day, periods in days.items():
            for period_id, slots in periods.items():
                for slot in slots or []:
                    found.setdefault(slot['id'], []).append((cg_id, day, period_id))
    return {k: sorted(v) for k, v in found.items()}


def conflict_types(result: dict) -> list:
    return [c['type'] for c in result['conflicts']]


def test_same_teacher_spreads_over_days(make_payload):
    payload = make_payload(
        days=('Mon', 'Tue'),
        periods=1,
        class_groups=('c1', 'c2'),
        allocations=[('t1', 'c1', 'maths'), ('t1', 'c2', 'maths')],
        rules=[('maths', 'c1', [(1, 1)]), ('maths', 'c2', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert result['conflicts'] == []
    assert placements(result['timetable']) == {
        'c1-maths-1-0': [('c1', 'Mon', 'p1')],
        'c2-maths-1-0': [('c2', 'Tue', 'p1')],
    }


def test_daily_cap_leaves_one_lesson_unplaced(make_payload):
    payload = make_payload(
        periods=5,
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(2, 1)], 1)],
    )
    result = generate_timetable(payload)

    assert placements(result['timetable']) == {'c1-maths-1-0': [('c1', 'Mon', 'p1')]}
    assert conflict_types(result) == ['Placement Failure']
    conflict = result['conflicts'][0]
    assert conflict['id'] == 'conflict-place-c1-maths-1-1'
    assert conflict['details']['teacherId'] == 't1'
    assert conflict['message'] == 'Could not find a valid slot for maths for class c1.'
    assert result['stats']['placedLessons'] == 1


def test_locked_lesson_keeps_teacher_slot(make_payload):
    payload = make_payload(
        periods=2,
        class_groups=('x', 'y'),
        subjects=('maths', 'history'),
        allocations=[('t1', 'x', 'maths')],
        rules=[('maths', 'x', [(1, 1)])],
        locked=[('y', 'history', 't1', 'Mon', 'p1', 1)],
    )
    result = generate_timetable(payload)

    assert result['conflicts'] == []
    assert placements(result['timetable'])['x-maths-1-0'] == [('x', 'Mon', 'p2')]
    assert result['timetable']['y']['Mon']['p1'][0]['id'] == 'lock-y-history-Mon-p1'


def test_locked_lesson_with_no_room_left_is_a_conflict(make_payload):
    payload = make_payload(
        periods=1,
        class_groups=('x', 'y'),
        subjects=('maths', 'history'),
        allocations=[('t1', 'x', 'maths')],
        rules=[('maths', 'x', [(1, 1)])],
        locked=[('y', 'history', 't1', 'Mon', 'p1', 1)],
    )
    result = generate_timetable(payload)

    assert conflict_types(result) == ['Placement Failure']
    assert result['timetable']['x']['Mon']['p1'] is None


def test_allocation_without_rule_is_invisible(make_payload):
    payload = make_payload(
        subjects=('maths', 'art'),
        allocations=[('t1', 'c1', 'maths'), ('t1', 'c1', 'art')],
        rules=[('maths', 'c1', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert result['conflicts'] == []
    assert list(placements(result['timetable'])) == ['c1-maths-1-0']
    subject_ids = {
        slot['subjectId']
        for days in result['timetable'].values()
        for periods in days.values()
        for slots in periods.values()
        for slot in slots or []
    }
    assert subject_ids == {'maths'}


def test_backtracks_across_more_than_one_level(make_payload):
    payload = make_payload(
        days=('Mon', 'Tue'),
        periods=1,
        class_groups=('c1', 'c2'),
        subjects=('a', 'b', 'c'),
        teachers=('t1', 't2'),
        allocations=[('t1', 'c1', 'a'), ('t1', 'c2', 'b'), ('t2', 'c2', 'c')],
        rules=[('a', 'c1', [(1, 1)]), ('b', 'c2', [(1, 1)]), ('c', 'c2', [(1, 1)])],
        unavailable=[('t2', 'Mon', 'p1')],
    )
    events = []
    result = generate_timetable(payload, on_progress=events.append)

    assert result['conflicts'] == []
    assert placements(result['timetable']) == {
        'c1-a-1-0': [('c1', 'Tue', 'p1')],
        'c2-b-1-0': [('c2', 'Mon', 'p1')],
        'c2-c-1-0': [('c2', 'Tue', 'p1')],
    }
    assert result['stats']['backtracks'] == 2

    backtrack_events = [e for e in events if 'backtracks' in e]
    assert [e['backtracks'] for e in backtrack_events] == [1, 2]
    assert backtrack_events[-1]['mostDifficultLesson']['id'] == 'c2-c-1-0'


def test_failure_reports_bottom_lesson_and_tail(make_payload):
    payload = make_payload(
        subjects=('maths', 'english'),
        allocations=[('t1', 'c1', 'maths'), ('t1', 'c1', 'english')],
        rules=[('maths', 'c1', [(2, 1)], 1), ('english', 'c1', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert [c['id'] for c in result['conflicts']] == [
        'conflict-place-c1-maths-1-1',
        'conflict-place-c1-english-1-0',
    ]
    assert list(placements(result['timetable'])) == ['c1-maths-1-0']


def test_repeated_definitions_fail_as_separate_lessons(make_payload):
    payload = make_payload(
        periods=1,
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(1, 1), (1, 1)])],
    )
    result = generate_timetable(payload)

    assert [c['id'] for c in result['conflicts']] == ['conflict-place-c1-maths-1-1']
    assert placements(result['timetable']) == {'c1-maths-1-0': [('c1', 'Mon', 'p1')]}


@pytest.mark.parametrize('periods, conflicts', [(5, 0), (1, 2)])
def test_timetable_is_serialised_once_per_run(make_payload, monkeypatch, periods, conflicts):
    calls = []
    to_dict = Timetable.to_dict

    def counting_to_dict(self):
        calls.append(self)
        return to_dict(self)

    monkeypatch.setattr(Timetable, 'to_dict', counting_to_dict)
    payload = make_payload(
        periods=periods,
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(3, 1)])],
    )
    result = generate_timetable(payload)

    assert len(result['conflicts']) == conflicts
    assert len(calls) == 1


def test_progress_events(make_payload):
    payload = make_payload(
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(2, 1)])],
    )
    events = []
    generate_timetable(payload, on_progress=events.append)

    assert events == [
        {'placed': 0, 'total': 2, 'currentLessonText': 'maths for c1'},
        {'placed': 1, 'total': 2, 'currentLessonText': 'maths for c1'},
    ]


def test_double_periods_are_contiguous_and_avoid_breaks(make_payload):
    payload = make_payload(
        days=('Mon', 'Tue'),
        periods=5,
        breaks=(3,),
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(3, 2)])],
    )
    snapshot = parse_snapshot(payload)
    result = generate_timetable(snapshot)
    order = [p.id for p in snapshot.time_grids['g1'].periods]

    assert result['conflicts'] == []
    for lesson_id, cells in placements(result['timetable']).items():
        assert len(cells) == 2
        assert len({day for _, day, _ in cells}) == 1
        indexes = sorted(order.index(p) for _, _, p in cells)
        assert indexes[1] == indexes[0] + 1
        assert 'p3' not in [p for _, _, p in cells]
    assert validate_timetable(result['timetable'], snapshot) == []


def test_electives_of_one_group_share_a_slot(make_payload):
    payload = make_payload(
        periods=1,
        subjects=(('french', 'languages'), ('german', 'languages')),
        teachers=('t1', 't2'),
        allocations=[('t1', 'c1', 'french'), ('t2', 'c1', 'german')],
        rules=[('french', 'c1', [(1, 1)]), ('german', 'c1', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert result['conflicts'] == []
    assert len(result['timetable']['c1']['Mon']['p1']) == 2


def test_electives_of_different_groups_do_not(make_payload):
    payload = make_payload(
        periods=1,
        subjects=(('french', 'languages'), ('drama', 'arts')),
        teachers=('t1', 't2'),
        allocations=[('t1', 'c1', 'french'), ('t2', 'c1', 'drama')],
        rules=[('french', 'c1', [(1, 1)]), ('drama', 'c1', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert conflict_types(result) == ['Placement Failure']
    assert result['conflicts'][0]['details']['subjectId'] == 'drama'


def test_school_sized_run_satisfies_invariants(make_payload):
    class_groups = ('c1', 'c2', 'c3')
    subjects = ('maths', 'english', 'science', ('french', 'languages'), ('german', 'languages'))
    subject_ids = ('maths', 'english', 'science', 'french', 'german')
    teachers = ('t1', 't2', 't3', 't4', 't5')
    allocations = []
    rules = []
    for cg in class_groups:
        for n, subject_id in enumerate(subject_ids):
            allocations.append((teachers[n], cg, subject_id))
            rules.append((subject_id, cg, [(2, 1), (1, 2)], 2))

    payload = make_payload(
        days=('Mon', 'Tue', 'Wed', 'Thu', 'Fri'),
        periods=7,
        breaks=(4,),
        class_groups=class_groups,
        subjects=subjects,
        teachers=teachers,
        allocations=allocations,
        rules=rules,
        unavailable=[('t1', 'Mon', 'p1'), ('t2', 'Fri', 'p7')],
    )
    snapshot = parse_snapshot(payload)
    result = generate_timetable(snapshot)

    assert result['conflicts'] == []
    assert result['stats']['placedLessons'] == result['stats']['totalLessons'] == 45
    assert validate_timetable(result['timetable'], snapshot) == []

    # Runs are deterministic
    again = generate_timetable(snapshot)
    assert json.dumps(again['timetable'], sort_keys=True) == json.dumps(result['timetable'], sort_keys=True)


def test_overlapping_locks_are_reported(make_payload):
    payload = make_payload(
        class_groups=('c1', 'c2'),
        subjects=('maths', 'art'),
        locked=[
            ('c1', 'maths', 't1', 'Mon', 'p1', 1),
            ('c2', 'art', 't1', 'Mon', 'p1', 1),
            ('c1', 'art', 't2', 'Mon', 'p9', 1),
        ],
        teachers=('t1', 't2'),
    )
    result = generate_timetable(payload)

    assert conflict_types(result) == ['Locked Lesson Overlap', 'Locked Lesson Overlap']
    assert result['conflicts'][0]['id'] == 'conflict-lock-2'
    assert 'already booked' in result['conflicts'][0]['message']
    assert result['conflicts'][1]['details']['periodId'] == 'p9'
    # The overlapping lock is still written, the one with no such period is not
    assert result['timetable']['c2']['Mon']['p1'][0]['teacherId'] == 't1'


def test_lock_over_a_break_is_reported(make_payload):
    payload = make_payload(
        periods=3,
        breaks=(2,),
        locked=[('c1', 'maths', 't1', 'Mon', 'p1', 2)],
    )
    result = generate_timetable(payload)

    assert conflict_types(result) == ['Locked Lesson Overlap']
    assert 'covers a break' in result['conflicts'][0]['message']


def test_unknown_references_are_reported(make_payload):
    payload = make_payload(
        allocations=[('ghost', 'c1', 'maths')],
        rules=[('maths', 'c1', [(1, 1)])],
    )
    result = generate_timetable(payload)

    assert conflict_types(result) == ['Constraint Violation']
    assert result['conflicts'][0]['id'] == 'conflict-alloc-a1'
    assert result['stats']['skippedAllocations'] == 1


def test_cancel_before_start(make_payload):
    payload = make_payload(allocations=[('t1', 'c1', 'maths')], rules=[('maths', 'c1', [(1, 1)])])
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(GenerationCancelled):
        generate_timetable(payload, cancel_event=cancel)


def test_cancel_from_progress_callback(heavy_payload):
    cancel = threading.Event()
    seen = []

    def on_progress(event):
        seen.append(event)
        if len(seen) == 50:
            cancel.set()

    with pytest.raises(GenerationCancelled) as excinfo:
        generate_timetable(heavy_payload, on_progress=on_progress, cancel_event=cancel)

    assert excinfo.value.total == 12
    assert len(seen) >= 50


def test_unknown_constraint_type_is_rejected(make_payload):
    payload = make_payload(extra_constraints=[{'type': 'room-capacity', 'roomId': 'r1'}])

    with pytest.raises(SnapshotError):
        parse_snapshot(payload)


def test_unenforced_constraints_are_accepted(make_payload):
    payload = make_payload(
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(3, 1)])],
        extra_constraints=[
            {'type': 'teacher-max-periods-day', 'teacherId': 't1', 'maxPeriods': 1},
            {'type': 'teacher-max-consecutive', 'teacherId': 't1', 'maxPeriods': 1},
        ],
    )
    result = generate_timetable(payload)

    # Carried but not enforced: three consecutive periods on one day
    assert result['conflicts'] == []
    assert len(placements(result['timetable'])) == 3


def test_parallel_runs_keep_enough_recursion_depth(make_payload):
    """A short run finishing must not shrink the limit under a deep run."""
    class_groups = [f'c{n}' for n in range(30)]
    teachers = [f't{n}' for n in range(30)]
    deep = make_payload(
        days=('Mon', 'Tue', 'Wed', 'Thu', 'Fri'),
        periods=8,
        class_groups=class_groups,
        teachers=teachers,
        allocations=[(t, cg, 'maths') for t, cg in zip(teachers, class_groups)],
        rules=[('maths', cg, [(40, 1)]) for cg in class_groups],
    )
    shallow = make_payload(
        days=('Mon', 'Tue', 'Wed', 'Thu', 'Fri'),
        periods=10,
        allocations=[('t1', 'c1', 'maths')],
        rules=[('maths', 'c1', [(50, 1)])],
    )
    deep_started = threading.Event()
    shallow_done = threading.Event()
    results, errors = {}, {}

    def shallow_progress(payload):
        if payload['placed'] == 0 and 'backtracks' not in payload:
            deep_started.wait(timeout=10)

    def deep_progress(payload):
        if not deep_started.is_set():
            deep_started.set()
            shallow_done.wait(timeout=10)

    def run(name, payload, on_progress, done=None):
        try:
            results[name] = generate_timetable(payload, on_progress=on_progress)
        except Exception as e:
            errors[name] = repr(e)
        finally:
            if done is not None:
                done.set()

    original_limit = sys.getrecursionlimit()
    sys.setrecursionlimit(1000)
    try:
        threads = [
            threading.Thread(target=run, args=('shallow', shallow, shallow_progress, shallow_done)),
            threading.Thread(target=run, args=('deep', deep, deep_progress)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
    finally:
        sys.setrecursionlimit(max(original_limit, sys.getrecursionlimit()))

    assert errors == {}
    assert results['shallow']['stats']['placedLessons'] == 50
    assert results['deep']['stats']['placedLessons'] == 1200
    assert results['deep']['conflicts'] == []
