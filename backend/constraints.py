"""
Slot occupancy and placement legality.

Timetable is the single mutable structure a run works on. The search
places a lesson, recurses, and unplaces it again on the way back, so
every branch sees exactly the state a private copy would have given it.
"""

import logging
from collections import defaultdict
from typing import Optional

from models import (
    GeneratedSlot,
    Lesson,
    LockedLesson,
    PeriodKind,
    Snapshot,
    SubjectRule,
    TeacherMaxConsecutive,
    TeacherMaxPeriodsPerDay,
    TeacherUnavailable,
    TimeGrid,
)

logger = logging.getLogger(__name__)


def lesson_span(grid: TimeGrid, start_index: int, duration: int) -> Optional[list]:
    """Periods a lesson starting at start_index would cover.

    Returns None when the span runs past the end of the day or touches a
    Break period.
    """
    if start_index < 0 or start_index + duration > len(grid.periods):
        return None
    periods = list(grid.periods[start_index:start_index + duration])
    if any(p.kind != PeriodKind.LESSON for p in periods):
        return None
    return periods


class Timetable:
    """Generated timetable keyed by (class group, day, period).

    Cells start as None and hold a list of GeneratedSlot once occupied.
    A teacher index is kept alongside so teacher_busy does not have to scan
    every class group.
    """

    def __init__(self, snapshot: Snapshot):
        self._subjects = snapshot.subjects
        self._cells: dict = {}
        self._teacher_load: dict = defaultdict(int)  # (teacher, day, period) -> slot count

        for cg in snapshot.timetabled_class_groups():
            grid = snapshot.grid_for(cg)
            self._cells[cg.id] = {day: {p.id: None for p in grid.periods} for day in grid.days}

    def has_class_group(self, class_group_id: str) -> bool:
        return class_group_id in self._cells

    def occupants(self, class_group_id: str, day: str, period_id: str) -> list:
        return self._cells.get(class_group_id, {}).get(day, {}).get(period_id) or []

    def _add(self, class_group_id: str, day: str, period_id: str, slot: GeneratedSlot):
        cell = self._cells[class_group_id][day]
        if cell.get(period_id) is None:
            cell[period_id] = []
        cell[period_id].append(slot)
        self._teacher_load[(slot.teacher_id, day, period_id)] += 1

    def place(self, lesson: Lesson, day: str, periods: list) -> list:
        slots = []
        for period in periods:
            slot = GeneratedSlot(
                id=lesson.id,
                class_group_id=lesson.class_group.id,
                subject_id=lesson.subject.id,
                teacher_id=lesson.teacher.id,
            )
            self._add(lesson.class_group.id, day, period.id, slot)
            slots.append(slot)
        return slots

    def unplace(self, lesson: Lesson, day: str, periods: list):
        """Undo the most recent place() of this lesson."""
        cells = self._cells[lesson.class_group.id][day]
        for period in periods:
            cell = cells[period.id]
            # Placements are undone in reverse order, so ours is the last slot
            slot = cell.pop()
            if slot.id != lesson.id:
                raise RuntimeError(f'Unplace of {lesson.id} found {slot.id} on top of {day}/{period.id}')
            if not cell:
                cells[period.id] = None
            key = (slot.teacher_id, day, period.id)
            self._teacher_load[key] -= 1
            if not self._teacher_load[key]:
                del self._teacher_load[key]

    def add_locked(self, lock: LockedLesson, periods: list) -> list:
        slots = []
        for period in periods:
            slot = GeneratedSlot(
                id=f'lock-{lock.class_group_id}-{lock.subject_id}-{lock.day}-{lock.period_id}',
                class_group_id=lock.class_group_id,
                subject_id=lock.subject_id,
                teacher_id=lock.teacher_id,
            )
            self._add(lock.class_group_id, lock.day, period.id, slot)
            slots.append(slot)
        return slots

    # --- Occupancy predicates ---

    def teacher_busy(self, teacher_id: str, day: str, period_id: str) -> bool:
        return self._teacher_load.get((teacher_id, day, period_id), 0) > 0

    def class_group_blocked(self, class_group_id: str, day: str, period_id: str, subject) -> bool:
        """Whether placing `subject` here would clash with what is already there.

        Core blocks and is blocked by anything. Electives only share a slot
        with electives of the same elective group.
        """
        existing = self.occupants(class_group_id, day, period_id)
        if not existing:
            return False
        if subject.is_core:
            return True
        for slot in existing:
            other = self._subjects.get(slot.subject_id)
            if other is None:
                continue
            if other.is_core:
                return True
            if other.is_elective and other.elective_group != subject.elective_group:
                return True
        return False

    def subject_periods_on_day(self, class_group_id: str, subject_id: str, day: str) -> int:
        """Number of periods on `day` where the class group has `subject_id`."""
        day_cells = self._cells.get(class_group_id, {}).get(day, {})
        return sum(
            1 for slots in day_cells.values()
            if slots and any(s.subject_id == subject_id for s in slots)
        )

    def to_dict(self) -> dict:
        """JSON-ready copy: classGroupId -> day -> periodId -> [slot] | None."""
        return {
            cg_id: {
                day: {
                    period_id: [s.to_dict() for s in slots] if slots else None
                    for period_id, slots in periods.items()
                }
                for day, periods in days.items()
            }
            for cg_id, days in self._cells.items()
        }


class ConstraintEvaluator:
    """Decides whether a (lesson, day, start period) candidate is legal."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot
        self._unavailable = set()
        self._rules: dict = {}
        self._rules_by_class_group: dict = defaultdict(list)
        unenforced = []

        for c in snapshot.time_constraints:
            if isinstance(c, TeacherUnavailable):
                self._unavailable.add((c.teacher_id, c.day, c.period_id))
            elif isinstance(c, SubjectRule):
                self._rules.setdefault((c.subject_id, c.class_group_id), c)
                self._rules_by_class_group[c.class_group_id].append(c)
                if c.min_days_apart or c.max_consecutive or c.must_be_every_day or c.preferred_time not in ('any', ''):
                    unenforced.append(c.type)
            elif isinstance(c, (TeacherMaxPeriodsPerDay, TeacherMaxConsecutive)):
                unenforced.append(c.type)

        if unenforced:
            logger.info(
                f"{len(unenforced)} constraint(s) carry settings the search does not enforce "
                f"({', '.join(sorted(set(unenforced)))})"
            )

    def rule_for(self, subject, class_group_id: str) -> Optional[SubjectRule]:
        """Subject rule governing a subject's per-day cap in a class group.

        Falls back to a rule for another subject of the same elective group
        in the same class group.
        """
        rule = self._rules.get((subject.id, class_group_id))
        if rule is not None or not subject.elective_group:
            return rule
        for candidate in self._rules_by_class_group.get(class_group_id, []):
            other = self.snapshot.subjects.get(candidate.subject_id)
            if other is not None and other.elective_group == subject.elective_group:
                return candidate
        return None

    def teacher_unavailable(self, teacher_id: str, day: str, period_id: str) -> bool:
        return (teacher_id, day, period_id) in self._unavailable

    def is_placement_valid(self, timetable: Timetable, lesson: Lesson, grid: TimeGrid, day: str, start_index: int) -> bool:
        periods = lesson_span(grid, start_index, lesson.duration)
        if periods is None:
            return False

        teacher_id = lesson.teacher.id
        class_group_id = lesson.class_group.id
        for period in periods:
            if timetable.teacher_busy(teacher_id, day, period.id):
                return False
            if self.teacher_unavailable(teacher_id, day, period.id):
                return False
            if timetable.class_group_blocked(class_group_id, day, period.id, lesson.subject):
                return False

        rule = self.rule_for(lesson.subject, class_group_id)
        if rule is not None and rule.max_periods_per_day:
            on_day = timetable.subject_periods_on_day(class_group_id, lesson.subject.id, day)
            if on_day + lesson.duration > rule.max_periods_per_day:
                return False

        return True
