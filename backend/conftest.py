"""Shared payload builders for the engine tests."""

import pytest


def build_grid(grid_id: str = 'g1', days=('Mon',), periods: int = 5, breaks=()) -> dict:
    return {
        'id': grid_id,
        'name': grid_id,
        'days': list(days),
        'periods': [
            {
                'id': f'p{n}',
                'name': f'Period {n}',
                'startTime': f'{7 + n:02d}:00',
                'endTime': f'{7 + n:02d}:45',
                'type': 'Break' if n in breaks else 'Lesson',
            }
            for n in range(1, periods + 1)
        ],
        'color': '#cccccc',
    }


def build_payload(
    days=('Mon',),
    periods: int = 5,
    breaks=(),
    class_groups=('c1',),
    subjects=('maths',),
    teachers=('t1',),
    allocations=(),
    rules=(),
    unavailable=(),
    locked=(),
    extra_class_groups=(),
    extra_constraints=(),
    year: str = '',
) -> dict:
    """Start payload on a single shared grid.

    subjects: 'id' for a Core subject, ('id', 'group') for an Elective
    allocations: (teacher, class group, subject)
    rules: (subject, class group, [(count, duration)]) with an optional 4th cap
    unavailable: (teacher, day, period)
    locked: (class group, subject, teacher, day, period, duration)
    """
    subject_dicts = []
    for s in subjects:
        if isinstance(s, tuple):
            subject_dicts.append({'id': s[0], 'name': s[0], 'category': 'Elective', 'electiveGroup': s[1]})
        else:
            subject_dicts.append({'id': s, 'name': s, 'category': 'Core'})

    constraints = []
    for rule in rules:
        subject_id, cg_id, definitions = rule[0], rule[1], rule[2]
        cap = rule[3] if len(rule) > 3 else None
        constraints.append({
            'id': f'rule-{subject_id}-{cg_id}',
            'type': 'subject-rule',
            'subjectId': subject_id,
            'classGroupId': cg_id,
            'academicYear': year or None,
            'rules': {
                'lessonDefinitions': [{'count': c, 'duration': d} for c, d in definitions],
                'minDaysApart': 0,
                'maxPeriodsPerDay': cap,
            },
        })
    for teacher_id, day, period_id in unavailable:
        constraints.append({
            'type': 'not-available',
            'targetType': 'teacher',
            'targetId': teacher_id,
            'day': day,
            'periodId': period_id,
        })
    constraints.extend(extra_constraints)

    return {
        'allocations': [
            {'id': f'a{i + 1}', 'teacherId': t, 'classGroupId': cg, 'subjectId': s, 'role': 'Lead'}
            for i, (t, cg, s) in enumerate(allocations)
        ],
        'classGroups': [
            {'id': cg, 'name': cg, 'grade': '8', 'mode': 'Live', 'addToTimetable': True, 'timeGridId': 'g1'}
            for cg in class_groups
        ] + list(extra_class_groups),
        'academicStructure': {'subjects': subject_dicts},
        'timeGrids': [build_grid('g1', days, periods, breaks)],
        'timeConstraints': constraints,
        'currentAcademicYear': year,
        'lockedLessons': [
            {'classGroupId': cg, 'subjectId': s, 'teacherId': t, 'day': d, 'periodId': p, 'duration': n}
            for cg, s, t, d, p, n in locked
        ],
        'teachers': [{'id': t, 'fullName': t.upper()} for t in teachers],
    }


def pigeonhole_payload(periods: int = 11) -> dict:
    """One more single-period lesson than the grid has room for.

    Proving it infeasible walks every permutation, which keeps the search
    busy long enough to cancel it.
    """
    subjects = [f's{n}' for n in range(periods + 1)]
    teachers = [f't{n}' for n in range(periods + 1)]
    return build_payload(
        periods=periods,
        subjects=subjects,
        teachers=teachers,
        allocations=[(t, 'c1', s) for t, s in zip(teachers, subjects)],
        rules=[(s, 'c1', [(1, 1)]) for s in subjects],
    )


@pytest.fixture
def make_payload():
    return build_payload


@pytest.fixture
def heavy_payload():
    return pigeonhole_payload()
