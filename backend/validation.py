"""
Audit of a finished timetable.

The search never produces an illegal placement, but timetables are also
edited by hand downstream (moved lessons, toggled locks). This re-checks a
timetable dict against the snapshot and reports every rule it breaks.
"""

import logging
from collections import defaultdict

from constraints import ConstraintEvaluator
from models import Conflict, ConflictType, PeriodKind, Snapshot

logger = logging.getLogger(__name__)


def _violation(conflicts: list, message: str, **details):
    conflicts.append(Conflict(
        id=f'conflict-violation-{len(conflicts) + 1}',
        type=ConflictType.CONSTRAINT_VIOLATION,
        message=message,
        details=details,
    ))


def validate_timetable(timetable: dict, snapshot: Snapshot) -> list[Conflict]:
    """Check a classGroupId -> day -> periodId -> [slot] timetable.

    Returns Teacher Double-Booked conflicts for a teacher in two class groups
    at once, and Constraint Violation conflicts for everything else: slot
    sharing that breaks the Core/Elective rules, lessons in a Break or an
    unknown period, teachers placed while unavailable and per-day caps
    exceeded.
    """
    evaluator = ConstraintEvaluator(snapshot)
    conflicts: list = []
    teacher_groups = defaultdict(dict)  # (teacher, day, period) -> {classGroupId: subjectId}

    for cg_id, days in timetable.items():
        class_group = snapshot.class_groups.get(cg_id)
        grid = snapshot.grid_for(class_group) if class_group else None
        kinds = {p.id: p.kind for p in grid.periods} if grid else {}

        for day, periods in days.items():
            subject_periods = defaultdict(int)
            for period_id, slots in periods.items():
                if not slots:
                    continue

                if grid is not None and period_id not in kinds:
                    _violation(conflicts, f'{cg_id} has a lesson in unknown period {period_id} on {day}.',
                               classGroupId=cg_id, day=day, periodId=period_id)
                elif kinds.get(period_id) == PeriodKind.BREAK:
                    _violation(conflicts, f'{cg_id} has a lesson during break {period_id} on {day}.',
                               classGroupId=cg_id, day=day, periodId=period_id)

                subjects = [snapshot.subjects.get(s['subjectId']) for s in slots]
                known = [s for s in subjects if s is not None]
                if len(slots) > 1:
                    if any(s.is_core for s in known):
                        _violation(conflicts, f'{cg_id} has a core subject sharing {period_id} on {day}.',
                                   classGroupId=cg_id, day=day, periodId=period_id)
                    elif len({s.elective_group for s in known if s.is_elective}) > 1:
                        _violation(conflicts, f'{cg_id} has electives from different groups in {period_id} on {day}.',
                                   classGroupId=cg_id, day=day, periodId=period_id)

                for subject_id in {s['subjectId'] for s in slots}:
                    subject_periods[subject_id] += 1

                for slot in slots:
                    teacher_id = slot['teacherId']
                    teacher_groups[(teacher_id, day, period_id)][cg_id] = slot['subjectId']
                    if evaluator.teacher_unavailable(teacher_id, day, period_id):
                        _violation(conflicts, f'Teacher {teacher_id} is unavailable in {period_id} on {day}.',
                                   teacherId=teacher_id, classGroupId=cg_id, day=day, periodId=period_id)

            for subject_id, count in subject_periods.items():
                subject = snapshot.subjects.get(subject_id)
                if subject is None:
                    continue
                rule = evaluator.rule_for(subject, cg_id)
                if rule is not None and rule.max_periods_per_day and count > rule.max_periods_per_day:
                    _violation(conflicts, f'{subject_id} has {count} periods on {day} for {cg_id}, cap is {rule.max_periods_per_day}.',
                               classGroupId=cg_id, subjectId=subject_id, day=day)

    for (teacher_id, day, period_id), groups in teacher_groups.items():
        if len(groups) < 2:
            continue
        (first_cg, first_subject), (second_cg, second_subject) = list(groups.items())[:2]
        conflicts.append(Conflict(
            id=f'conflict-double-{teacher_id}-{day}-{period_id}',
            type=ConflictType.TEACHER_DOUBLE_BOOKED,
            message=f'Teacher {teacher_id} is booked for {len(groups)} class groups in {period_id} on {day}.',
            details={
                'teacherId': teacher_id,
                'day': day,
                'periodId': period_id,
                'classGroupId': first_cg,
                'subjectId': first_subject,
                'conflictingClassGroupId': second_cg,
                'conflictingSubjectId': second_subject,
            },
        ))

    if conflicts:
        logger.info(f'Timetable audit found {len(conflicts)} conflict(s)')
    return conflicts
