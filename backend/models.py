"""
Engine-side data model for timetable generation.

Everything the search needs is parsed from the camelCase Start payload into
frozen dataclasses up front, so a run only ever sees an immutable snapshot.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)


class SnapshotError(ValueError):
    """Raised when the Start payload cannot be turned into a snapshot."""


class PeriodKind(str, Enum):
    LESSON = 'Lesson'
    BREAK = 'Break'


class SubjectCategory(str, Enum):
    CORE = 'Core'
    ELECTIVE = 'Elective'


class ConflictType(str, Enum):
    TEACHER_DOUBLE_BOOKED = 'Teacher Double-Booked'
    PLACEMENT_FAILURE = 'Placement Failure'
    CONSTRAINT_VIOLATION = 'Constraint Violation'
    LOCKED_LESSON_OVERLAP = 'Locked Lesson Overlap'


@dataclass(frozen=True)
class Period:
    id: str
    name: str = ''
    start_time: str = ''  # "HH:mm"
    end_time: str = ''
    kind: PeriodKind = PeriodKind.LESSON


@dataclass(frozen=True)
class TimeGrid:
    id: str
    days: tuple  # ordered day names
    periods: tuple  # ordered Period objects
    name: str = ''
    color: str = ''

    def period_index(self, period_id: str) -> int:
        for i, p in enumerate(self.periods):
            if p.id == period_id:
                return i
        return -1


@dataclass(frozen=True)
class ClassGroup:
    id: str
    name: str = ''
    curriculum_id: str = ''
    grade: str = ''
    mode: str = ''
    add_to_timetable: bool = False
    time_grid_id: Optional[str] = None


@dataclass(frozen=True)
class Subject:
    id: str
    name: str = ''
    category: SubjectCategory = SubjectCategory.CORE
    elective_group: Optional[str] = None

    @property
    def is_core(self) -> bool:
        return self.category == SubjectCategory.CORE

    @property
    def is_elective(self) -> bool:
        return self.category == SubjectCategory.ELECTIVE


@dataclass(frozen=True)
class Teacher:
    id: str
    full_name: str = ''


@dataclass(frozen=True)
class TeacherAllocation:
    teacher_id: str
    class_group_id: str
    subject_id: str
    id: Optional[str] = None
    role: str = 'Lead'


@dataclass(frozen=True)
class LessonDefinition:
    count: int
    duration: int  # consecutive periods, 2 = double period


# --- Time constraints: one variant per kind, tagged by ``type`` ---

@dataclass(frozen=True)
class TeacherUnavailable:
    teacher_id: str
    day: str
    period_id: str
    id: Optional[str] = None
    type: str = field(default='not-available', init=False)


@dataclass(frozen=True)
class TeacherMaxPeriodsPerDay:
    teacher_id: str
    max_periods: int
    id: Optional[str] = None
    type: str = field(default='teacher-max-periods-day', init=False)


@dataclass(frozen=True)
class TeacherMaxConsecutive:
    teacher_id: str
    max_periods: int
    id: Optional[str] = None
    type: str = field(default='teacher-max-consecutive', init=False)


@dataclass(frozen=True)
class SubjectRule:
    subject_id: str
    class_group_id: str
    lesson_definitions: tuple = ()
    max_periods_per_day: Optional[int] = None
    # Carried from the input but not enforced by the search
    min_days_apart: int = 0
    max_consecutive: Optional[int] = None
    must_be_every_day: bool = False
    preferred_time: str = 'any'
    id: Optional[str] = None
    type: str = field(default='subject-rule', init=False)


TimeConstraint = Union[TeacherUnavailable, TeacherMaxPeriodsPerDay, TeacherMaxConsecutive, SubjectRule]


@dataclass(frozen=True)
class LockedLesson:
    class_group_id: str
    subject_id: str
    teacher_id: str
    day: str
    period_id: str
    duration: int = 1


@dataclass(frozen=True)
class Lesson:
    """One schedulable instance of an allocation."""
    class_group: ClassGroup
    subject: Subject
    teacher: Teacher
    duration: int
    id: str


@dataclass(frozen=True)
class GeneratedSlot:
    id: str
    class_group_id: str
    subject_id: str
    teacher_id: str

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'classGroupId': self.class_group_id,
            'subjectId': self.subject_id,
            'teacherId': self.teacher_id,
        }


@dataclass
class Conflict:
    id: str
    type: ConflictType
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.type.value,
            'message': self.message,
            'details': dict(self.details),
        }


@dataclass(frozen=True)
class Snapshot:
    """Immutable bundle of every input a generation run needs."""
    allocations: tuple
    class_groups: dict  # id -> ClassGroup, input order preserved
    subjects: dict  # id -> Subject
    teachers: dict  # id -> Teacher
    time_grids: dict  # id -> TimeGrid
    time_constraints: tuple
    locked_lessons: tuple = ()
    current_academic_year: str = ''

    @property
    def subject_rules(self) -> list:
        return [c for c in self.time_constraints if isinstance(c, SubjectRule)]

    def grid_for(self, class_group: ClassGroup) -> Optional[TimeGrid]:
        if not class_group.time_grid_id:
            return None
        return self.time_grids.get(class_group.time_grid_id)

    def timetabled_class_groups(self) -> list:
        """Class groups that take part in timetabling and have a usable grid."""
        return [
            cg for cg in self.class_groups.values()
            if cg.add_to_timetable and self.grid_for(cg) is not None
        ]


# --- Payload parsing ---

def _parse_period(p: dict) -> Period:
    raw_kind = p.get('type', 'Lesson')
    try:
        kind = PeriodKind(raw_kind)
    except ValueError:
        raise SnapshotError(f"Period '{p.get('id')}' has unknown type '{raw_kind}'")
    return Period(
        id=p['id'],
        name=p.get('name', ''),
        start_time=p.get('startTime', ''),
        end_time=p.get('endTime', ''),
        kind=kind,
    )


def _parse_subject(s: dict) -> Subject:
    raw_category = s.get('category', 'Core')
    try:
        category = SubjectCategory(raw_category)
    except ValueError:
        raise SnapshotError(f"Subject '{s.get('id')}' has unknown category '{raw_category}'")
    return Subject(
        id=s['id'],
        name=s.get('name', ''),
        category=category,
        elective_group=s.get('electiveGroup') or None,
    )


def parse_constraint(c: dict) -> TimeConstraint:
    """Convert one wire constraint dict into its tagged variant."""
    ctype = c.get('type')
    if ctype == 'not-available':
        # Only teacher targets exist on the wire today
        return TeacherUnavailable(
            teacher_id=c.get('targetId') or c.get('teacherId'),
            day=c['day'],
            period_id=c['periodId'],
            id=c.get('id'),
        )
    if ctype == 'teacher-max-periods-day':
        return TeacherMaxPeriodsPerDay(teacher_id=c['teacherId'], max_periods=int(c['maxPeriods']), id=c.get('id'))
    if ctype == 'teacher-max-consecutive':
        return TeacherMaxConsecutive(teacher_id=c['teacherId'], max_periods=int(c['maxPeriods']), id=c.get('id'))
    if ctype == 'subject-rule':
        rules = c.get('rules') or {}
        definitions = tuple(
            LessonDefinition(count=int(d.get('count', 0)), duration=int(d.get('duration', 1)))
            for d in rules.get('lessonDefinitions') or []
        )
        return SubjectRule(
            subject_id=c['subjectId'],
            class_group_id=c['classGroupId'],
            lesson_definitions=definitions,
            max_periods_per_day=rules.get('maxPeriodsPerDay') or None,
            min_days_apart=rules.get('minDaysApart') or 0,
            max_consecutive=rules.get('maxConsecutive') or None,
            must_be_every_day=bool(rules.get('mustBeEveryDay', False)),
            preferred_time=rules.get('preferredTime') or 'any',
            id=c.get('id'),
        )
    raise SnapshotError(f"Unknown time constraint type '{ctype}'")


def parse_snapshot(payload: dict) -> Snapshot:
    """Build a Snapshot from a camelCase Start payload.

    Constraints tagged with an academic year other than
    ``currentAcademicYear`` are dropped; untagged ones always apply.
    """
    current_year = payload.get('currentAcademicYear') or ''
    structure = payload.get('academicStructure') or {}

    subjects = {}
    for s in structure.get('subjects') or []:
        subject = _parse_subject(s)
        subjects[subject.id] = subject

    teachers = {t['id']: Teacher(id=t['id'], full_name=t.get('fullName') or t.get('name', '')) for t in payload.get('teachers') or []}

    class_groups = {}
    for cg in payload.get('classGroups') or []:
        class_groups[cg['id']] = ClassGroup(
            id=cg['id'],
            name=cg.get('name', ''),
            curriculum_id=cg.get('curriculumId', ''),
            grade=cg.get('grade', ''),
            mode=cg.get('mode', ''),
            add_to_timetable=bool(cg.get('addToTimetable', False)),
            time_grid_id=cg.get('timeGridId') or None,
        )

    time_grids = {}
    for g in payload.get('timeGrids') or []:
        time_grids[g['id']] = TimeGrid(
            id=g['id'],
            name=g.get('name', ''),
            days=tuple(g.get('days') or []),
            periods=tuple(_parse_period(p) for p in g.get('periods') or []),
            color=g.get('color', ''),
        )

    constraints = []
    for c in payload.get('timeConstraints') or []:
        year = c.get('academicYear')
        if current_year and year and year != current_year:
            continue
        constraints.append(parse_constraint(c))

    allocations = tuple(
        TeacherAllocation(
            teacher_id=a.get('teacherId'),
            class_group_id=a.get('classGroupId'),
            subject_id=a.get('subjectId'),
            id=a.get('id'),
            role=a.get('role', 'Lead'),
        )
        for a in payload.get('allocations') or []
    )

    locked = []
    for lock in payload.get('lockedLessons') or []:
        duration = int(lock.get('duration', 1))
        if duration < 1:
            raise SnapshotError(
                f"Locked lesson {lock.get('subjectId')} in {lock.get('classGroupId')} has duration {duration}"
            )
        locked.append(LockedLesson(
            class_group_id=lock['classGroupId'],
            subject_id=lock['subjectId'],
            teacher_id=lock['teacherId'],
            day=lock['day'],
            period_id=lock['periodId'],
            duration=duration,
        ))

    logger.debug(
        f"Parsed snapshot: {len(allocations)} allocations, {len(class_groups)} class groups, "
        f"{len(constraints)} constraints, {len(locked)} locked lessons (year {current_year or 'any'})"
    )

    return Snapshot(
        allocations=allocations,
        class_groups=class_groups,
        subjects=subjects,
        teachers=teachers,
        time_grids=time_grids,
        time_constraints=tuple(constraints),
        locked_lessons=tuple(locked),
        current_academic_year=current_year,
    )
