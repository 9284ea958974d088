"""
Timetable Solver - chronological backtracking

Places lessons one at a time in expansion order. Each lesson tries every
day of its class group's grid, then every start period, and takes the first
legal slot whose subtree completes. A dead end unwinds to the previous
lesson, which moves on to its next candidate.
"""

import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from constraints import ConstraintEvaluator, Timetable, lesson_span
from lessons import describe_lesson, expand_lessons, filter_locked
from models import (
    Conflict,
    ConflictType,
    Lesson,
    PeriodKind,
    Snapshot,
    parse_snapshot,
)

logger = logging.getLogger(__name__)

# Frames kept free above the deepest lesson for callers and logging
RECURSION_HEADROOM = 1000

_recursion_lock = threading.Lock()


def ensure_recursion_limit(depth: int):
    """Raise the interpreter recursion limit to fit a search of this depth.

    The limit is process-wide and searches run on parallel job threads, so it
    only ever goes up.
    """
    needed = depth + RECURSION_HEADROOM
    with _recursion_lock:
        if needed > sys.getrecursionlimit():
            logger.debug(f'Raising recursion limit to {needed}')
            sys.setrecursionlimit(needed)


class GenerationCancelled(Exception):
    """Raised from inside the search once the cancel flag is seen."""

    def __init__(self, placed: int, total: int, backtracks: int):
        super().__init__(f'Generation cancelled after {placed}/{total} lessons')
        self.placed = placed
        self.total = total
        self.backtracks = backtracks


@dataclass
class SearchOutcome:
    success: bool
    timetable: dict
    unplaced: list = field(default_factory=list)


def lesson_summary(lesson: Lesson) -> dict:
    return {
        'id': lesson.id,
        'classGroupId': lesson.class_group.id,
        'subjectId': lesson.subject.id,
        'teacherId': lesson.teacher.id,
        'duration': lesson.duration,
        'text': describe_lesson(lesson),
    }


class SolverSession:
    """All state for one search run.

    Args:
        snapshot: Immutable inputs for the run
        timetable: Timetable already holding the locked lessons
        queue: Lessons to place, in search order
        on_progress: Optional callback(payload dict)
        cancel_event: Anything with is_set(), polled at every recursive entry
        placed_offset: Lessons counted as placed before the search starts
        total: Lesson count reported in progress events
    """

    def __init__(
        self,
        snapshot: Snapshot,
        timetable: Timetable,
        queue: list,
        on_progress: Optional[Callable[[dict], None]] = None,
        cancel_event=None,
        placed_offset: int = 0,
        total: Optional[int] = None,
    ):
        self.snapshot = snapshot
        self.timetable = timetable
        self.queue = queue
        self.evaluator = ConstraintEvaluator(snapshot)
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.placed_offset = placed_offset
        self.total = total if total is not None else len(queue) + placed_offset

        self.backtrack_counts: dict = {}  # lesson id -> local backtracks
        self.total_backtracks = 0
        self._lessons_by_id = {l.id: l for l in queue}
        self._deepest = -1
        self._path: list = []  # (lesson, day, periods) currently placed by the search
        self._deepest_path: list = []
        self._path_stable = 0  # prefix of _path unchanged since _deepest_path was taken

    def _emit(self, payload: dict):
        if self.on_progress:
            self.on_progress(payload)

    def most_difficult_lesson(self) -> Optional[Lesson]:
        if not self.backtrack_counts:
            return None
        lesson_id = max(self.backtrack_counts, key=self.backtrack_counts.get)
        return self._lessons_by_id.get(lesson_id)

    def _record_depth(self, index: int):
        if index > self._deepest:
            self._deepest = index
            self._deepest_path[self._path_stable:] = self._path[self._path_stable:]
            self._path_stable = len(self._path)

    def _place(self, lesson: Lesson, day: str, periods: list):
        self.timetable.place(lesson, day, periods)
        self._path.append((lesson, day, periods))

    def _unplace(self, lesson: Lesson, day: str, periods: list):
        self.timetable.unplace(lesson, day, periods)
        self._path.pop()
        self._path_stable = min(self._path_stable, len(self._path))

    def solve(self, index: int = 0) -> bool:
        """Place queue[index:], returning True once every lesson fits."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise GenerationCancelled(self.placed_offset + index, self.total, self.total_backtracks)
        if index == len(self.queue):
            return True

        self._record_depth(index)
        lesson = self.queue[index]
        grid = self.snapshot.grid_for(lesson.class_group)
        placed = self.placed_offset + index

        self._emit({'placed': placed, 'total': self.total, 'currentLessonText': describe_lesson(lesson)})

        for day in grid.days:
            for start in range(len(grid.periods) - lesson.duration + 1):
                if not self.evaluator.is_placement_valid(self.timetable, lesson, grid, day, start):
                    continue
                periods = lesson_span(grid, start, lesson.duration)
                self._place(lesson, day, periods)
                if self.solve(index + 1):
                    return True
                self._unplace(lesson, day, periods)

        # Backtrack
        self.backtrack_counts[lesson.id] = self.backtrack_counts.get(lesson.id, 0) + 1
        self.total_backtracks += 1
        hardest = self.most_difficult_lesson()
        logger.debug(f'Backtrack #{self.total_backtracks} at {lesson.id} ({self.backtrack_counts[lesson.id]}x)')
        self._emit({
            'placed': placed,
            'total': self.total,
            'backtracks': self.total_backtracks,
            'mostDifficultLesson': lesson_summary(hardest) if hardest else None,
        })
        return False

    def run(self) -> SearchOutcome:
        """Search the whole queue.

        On failure the result is the deepest partial timetable reached: the
        lesson the search bottomed out at and everything after it are
        reported unplaced, the lessons before it keep their slots.
        """
        ensure_recursion_limit(len(self.queue))
        if self.solve(0):
            return SearchOutcome(success=True, timetable=self.timetable.to_dict())

        # The search has unwound to the locks only, replay the deepest path
        for lesson, day, periods in self._deepest_path:
            self.timetable.place(lesson, day, periods)
        return SearchOutcome(
            success=False,
            timetable=self.timetable.to_dict(),
            unplaced=list(self.queue[self._deepest:]),
        )


def prefill_locks(snapshot: Snapshot, timetable: Timetable) -> list[Conflict]:
    """Write locked lessons into the timetable before the search starts.

    Locks that cannot be written as given produce a Locked Lesson Overlap
    conflict. A lock whose day or period is unknown is dropped, any other
    problem lock is still written over the periods that exist.
    """
    conflicts = []

    def report(n: int, lock, problem: str):
        logger.warning(f'Locked lesson #{n + 1} ({lock.subject_id} in {lock.class_group_id}): {problem}')
        conflicts.append(Conflict(
            id=f'conflict-lock-{n + 1}',
            type=ConflictType.LOCKED_LESSON_OVERLAP,
            message=f'Locked lesson {lock.subject_id} for class {lock.class_group_id} on {lock.day}: {problem}.',
            details={
                'classGroupId': lock.class_group_id,
                'subjectId': lock.subject_id,
                'teacherId': lock.teacher_id,
                'day': lock.day,
                'periodId': lock.period_id,
            },
        ))

    for n, lock in enumerate(snapshot.locked_lessons):
        class_group = snapshot.class_groups.get(lock.class_group_id)
        if class_group is None or not timetable.has_class_group(class_group.id):
            report(n, lock, 'class group is not part of the timetable')
            continue
        grid = snapshot.grid_for(class_group)
        if lock.day not in grid.days:
            report(n, lock, f"day '{lock.day}' is not in time grid {grid.id}")
            continue
        start = grid.period_index(lock.period_id)
        if start == -1:
            report(n, lock, f"period '{lock.period_id}' is not in time grid {grid.id}")
            continue

        periods = list(grid.periods[start:start + lock.duration])
        problems = []
        if len(periods) < lock.duration:
            problems.append('runs past the end of the day')
        if any(p.kind != PeriodKind.LESSON for p in periods):
            problems.append('covers a break')
        subject = snapshot.subjects.get(lock.subject_id)
        for p in periods:
            if timetable.teacher_busy(lock.teacher_id, lock.day, p.id):
                problems.append(f'teacher {lock.teacher_id} is already booked in {p.id}')
            elif subject is not None and timetable.class_group_blocked(lock.class_group_id, lock.day, p.id, subject):
                problems.append(f'class group already occupied in {p.id}')
        if problems:
            report(n, lock, '; '.join(problems))

        timetable.add_locked(lock, periods)

    return conflicts


def build_conflicts(unplaced: list, skipped: list) -> list[Conflict]:
    """One Placement Failure per unplaced lesson, plus reportable skipped allocations."""
    conflicts = []
    for lesson in unplaced:
        conflicts.append(Conflict(
            id=f'conflict-place-{lesson.id}',
            type=ConflictType.PLACEMENT_FAILURE,
            message=(
                f'Could not find a valid slot for {lesson.subject.name or lesson.subject.id} '
                f'for class {lesson.class_group.name or lesson.class_group.id}.'
            ),
            details={
                'classGroupId': lesson.class_group.id,
                'classGroupName': lesson.class_group.name,
                'subjectId': lesson.subject.id,
                'subjectName': lesson.subject.name,
                'teacherId': lesson.teacher.id,
                'teacherName': lesson.teacher.full_name,
            },
        ))

    for skip in skipped:
        if not skip.reportable:
            continue
        alloc = skip.allocation
        conflicts.append(Conflict(
            id=f'conflict-alloc-{alloc.id or skip.index + 1}',
            type=ConflictType.CONSTRAINT_VIOLATION,
            message=f'{skip.reason}; no lessons were generated for it.',
            details={
                'classGroupId': alloc.class_group_id,
                'subjectId': alloc.subject_id,
                'teacherId': alloc.teacher_id,
            },
        ))
    return conflicts


def generate_timetable(
    inputs: Union[dict, Snapshot],
    on_progress: Optional[Callable[[dict], None]] = None,
    cancel_event=None,
) -> dict:
    """
    Main entry point for timetable generation.

    Args:
        inputs: Start payload dict (camelCase) or an already parsed Snapshot
        on_progress: Optional callback receiving progress payload dicts
        cancel_event: Optional threading.Event; setting it aborts the run

    Returns:
        Dict with timetable, conflicts and stats

    Raises:
        SnapshotError: the payload is structurally invalid
        GenerationCancelled: cancel_event was set before the search finished
    """
    start_time = time.time()
    snapshot = inputs if isinstance(inputs, Snapshot) else parse_snapshot(inputs)

    expansion = expand_lessons(snapshot)
    timetable = Timetable(snapshot)
    lock_conflicts = prefill_locks(snapshot, timetable)
    queue = filter_locked(expansion.lessons, snapshot.locked_lessons)
    locked_out = len(expansion.lessons) - len(queue)

    logger.info(
        f'Generating timetable: {len(expansion.lessons)} lessons ({locked_out} covered by locks), '
        f'{len(snapshot.locked_lessons)} locked, {len(expansion.skipped)} allocations skipped'
    )

    session = SolverSession(
        snapshot,
        timetable,
        queue,
        on_progress=on_progress,
        cancel_event=cancel_event,
        placed_offset=locked_out,
        total=len(expansion.lessons),
    )
    outcome = session.run()

    conflicts = lock_conflicts + build_conflicts(outcome.unplaced, expansion.skipped)
    elapsed = time.time() - start_time

    if outcome.success:
        logger.info(f'Timetable complete: {len(queue)} lessons placed, {session.total_backtracks} backtracks, {elapsed:.2f}s')
    else:
        logger.warning(
            f'Timetable incomplete: {len(outcome.unplaced)} of {len(queue)} lessons unplaced, '
            f'{session.total_backtracks} backtracks, {elapsed:.2f}s'
        )

    return {
        'timetable': outcome.timetable,
        'conflicts': [c.to_dict() for c in conflicts],
        'stats': {
            'totalLessons': len(expansion.lessons),
            'placedLessons': len(queue) - len(outcome.unplaced),
            'lockedLessons': len(snapshot.locked_lessons),
            'backtracks': session.total_backtracks,
            'skippedAllocations': sum(1 for s in expansion.skipped if s.reportable),
            'elapsedSeconds': round(elapsed, 3),
        },
    }
