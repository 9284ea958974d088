"""
Lesson expansion: turn allocations plus subject rules into schedulable lessons.

The order of the returned list is the order the search places lessons in,
so it must only depend on input order.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from models import Lesson, Snapshot, TeacherAllocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedAllocation:
    allocation: TeacherAllocation
    index: int  # position in the input list
    reason: str
    reportable: bool = True  # False for expected skips (e.g. class not timetabled)


@dataclass
class ExpansionResult:
    lessons: list = field(default_factory=list)
    skipped: list = field(default_factory=list)


def lesson_id(class_group_id: str, subject_id: str, duration: int, occurrence: int) -> str:
    return f'{class_group_id}-{subject_id}-{duration}-{occurrence}'


def describe_lesson(lesson: Lesson) -> str:
    return f'{lesson.subject.name or lesson.subject.id} for {lesson.class_group.name or lesson.class_group.id}'


def expand_lessons(snapshot: Snapshot) -> ExpansionResult:
    """Expand every allocation into concrete Lesson instances.

    Allocations referencing a missing class group, subject or teacher are
    recorded as skipped. Allocations without a subject rule produce no
    lessons and are not recorded: that is the expected way to leave a
    subject off the timetable.
    """
    result = ExpansionResult()
    timetabled = {cg.id for cg in snapshot.timetabled_class_groups()}
    rules = {(r.subject_id, r.class_group_id): r for r in reversed(snapshot.subject_rules)}
    occurrences = defaultdict(int)  # (class group, subject, duration) -> lessons issued

    for index, alloc in enumerate(snapshot.allocations):
        class_group = snapshot.class_groups.get(alloc.class_group_id)
        subject = snapshot.subjects.get(alloc.subject_id)
        teacher = snapshot.teachers.get(alloc.teacher_id)

        missing = []
        if class_group is None:
            missing.append(f"class group '{alloc.class_group_id}'")
        if subject is None:
            missing.append(f"subject '{alloc.subject_id}'")
        if teacher is None:
            missing.append(f"teacher '{alloc.teacher_id}'")
        if missing:
            reason = f"Allocation references unknown {', '.join(missing)}"
            logger.warning(f"Skipping allocation #{index + 1}: {reason}")
            result.skipped.append(SkippedAllocation(alloc, index, reason))
            continue

        if class_group.id not in timetabled:
            logger.debug(f"Allocation #{index + 1}: class group {class_group.id} is not timetabled")
            result.skipped.append(SkippedAllocation(alloc, index, 'Class group is not timetabled', reportable=False))
            continue

        rule = rules.get((subject.id, class_group.id))
        if rule is None or not rule.lesson_definitions:
            logger.debug(f"Allocation #{index + 1}: no subject rule for {subject.id} in {class_group.id}, no lessons")
            continue

        for definition in rule.lesson_definitions:
            if definition.count < 1 or definition.duration < 1:
                continue
            key = (class_group.id, subject.id, definition.duration)
            for _ in range(definition.count):
                result.lessons.append(Lesson(
                    class_group=class_group,
                    subject=subject,
                    teacher=teacher,
                    duration=definition.duration,
                    id=lesson_id(*key, occurrences[key]),
                ))
                occurrences[key] += 1

    return result


def filter_locked(lessons: list, locked_lessons) -> list:
    """Drop lessons already covered by a lock.

    Locks match on (subject, class group) only, so one lock removes every
    lesson of that subject for that class group.
    """
    locked_keys = {(lock.subject_id, lock.class_group_id) for lock in locked_lessons}
    return [l for l in lessons if (l.subject.id, l.class_group.id) not in locked_keys]
