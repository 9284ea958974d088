"""
FastAPI service for the timetable generation engine.

Generation runs as a background job (POST /generate, poll GET /jobs/{id},
cancel with POST /jobs/{id}/cancel). POST /solve runs synchronously with a
time limit for small inputs and scripts.
"""

import os
import time
import threading
import logging
from typing import Annotated, Literal, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from models import SnapshotError, parse_snapshot
from solver import GenerationCancelled, generate_timetable
from validation import validate_timetable
from worker import JobRegistry

# Configure logging
DEBUG_SOLVER = os.environ.get("DEBUG_SOLVER", "").lower() in ("1", "true", "yes")
logging.basicConfig(
    level=logging.DEBUG if DEBUG_SOLVER else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

if DEBUG_SOLVER:
    logger.info("DEBUG_SOLVER is enabled - verbose logging active")

PROGRESS_QUEUE_SIZE = int(os.environ.get("PROGRESS_QUEUE_SIZE", 1000))
MAX_FINISHED_JOBS = int(os.environ.get("MAX_FINISHED_JOBS", 50))
SOLVE_TIMEOUT_SECONDS = float(os.environ.get("SOLVE_TIMEOUT_SECONDS", 280.0))

app = FastAPI(
    title="Timetable Engine API",
    description="Backtracking timetable generator for school class groups",
    version="1.0.0"
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]

if os.environ.get("FRONTEND_URL"):
    ALLOWED_ORIGINS.append(os.environ["FRONTEND_URL"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

jobs = JobRegistry(max_queue=PROGRESS_QUEUE_SIZE, max_finished=MAX_FINISHED_JOBS)


class Period(BaseModel):
    id: str
    name: str = ""
    startTime: str = ""
    endTime: str = ""
    type: Literal["Lesson", "Break"] = "Lesson"


class TimeGrid(BaseModel):
    id: str
    name: str = ""
    days: list[str]
    periods: list[Period]
    color: str = ""


class ClassGroup(BaseModel):
    id: str
    name: str = ""
    curriculumId: str = ""
    grade: str = ""
    mode: str = ""
    addToTimetable: bool = False
    timeGridId: Optional[str] = None


class Subject(BaseModel):
    id: str
    name: str = ""
    category: Literal["Core", "Elective"] = "Core"
    electiveGroup: Optional[str] = None


class AcademicStructure(BaseModel):
    subjects: list[Subject] = []
    grades: list[str] = []
    modes: list[str] = []


class Teacher(BaseModel):
    id: str
    fullName: str = ""


class TeacherAllocation(BaseModel):
    id: Optional[str] = None
    teacherId: str
    classGroupId: str
    subjectId: str
    role: str = "Lead"


class LessonDefinition(BaseModel):
    id: Optional[str] = None
    count: int = Field(ge=0)
    duration: int = Field(default=1, ge=1)


class SubjectRuleSettings(BaseModel):
    lessonDefinitions: list[LessonDefinition] = []
    minDaysApart: int = 0
    maxPeriodsPerDay: Optional[int] = None
    maxConsecutive: Optional[int] = None
    mustBeEveryDay: bool = False
    preferredTime: Literal["any", "morning", "afternoon"] = "any"


class NotAvailableConstraint(BaseModel):
    type: Literal["not-available"]
    id: Optional[str] = None
    targetType: Literal["teacher"] = "teacher"
    targetId: str
    day: str
    periodId: str
    academicYear: Optional[str] = None


class TeacherMaxPeriodsDayConstraint(BaseModel):
    type: Literal["teacher-max-periods-day"]
    id: Optional[str] = None
    teacherId: str
    maxPeriods: int
    academicYear: Optional[str] = None


class TeacherMaxConsecutiveConstraint(BaseModel):
    type: Literal["teacher-max-consecutive"]
    id: Optional[str] = None
    teacherId: str
    maxPeriods: int
    academicYear: Optional[str] = None


class SubjectRuleConstraint(BaseModel):
    type: Literal["subject-rule"]
    id: Optional[str] = None
    subjectId: str
    classGroupId: str
    academicYear: Optional[str] = None
    rules: SubjectRuleSettings = SubjectRuleSettings()


TimeConstraint = Annotated[
    Union[NotAvailableConstraint, TeacherMaxPeriodsDayConstraint, TeacherMaxConsecutiveConstraint, SubjectRuleConstraint],
    Field(discriminator="type"),
]


class LockedLesson(BaseModel):
    classGroupId: str
    subjectId: str
    teacherId: str
    day: str
    periodId: str
    duration: int = Field(default=1, ge=1)


class StartRequest(BaseModel):
    allocations: list[TeacherAllocation] = []
    classGroups: list[ClassGroup] = []
    academicStructure: AcademicStructure = AcademicStructure()
    timeGrids: list[TimeGrid] = []
    timeConstraints: list[TimeConstraint] = []
    currentAcademicYear: str = ""
    lockedLessons: list[LockedLesson] = []
    teachers: list[Teacher] = []

    def payload(self) -> dict:
        return self.model_dump(exclude={"maxTimeSeconds", "timetable"})


class SolveRequest(StartRequest):
    maxTimeSeconds: Optional[float] = None


class GeneratedSlot(BaseModel):
    id: str = ""
    classGroupId: str = ""
    subjectId: str
    teacherId: str


class ValidateRequest(StartRequest):
    # classGroupId -> day -> periodId -> slots, None for an empty cell
    timetable: dict[str, dict[str, dict[str, Optional[list[GeneratedSlot]]]]]


class JobResponse(BaseModel):
    jobId: str
    status: str


class GenerateResponse(BaseModel):
    timetable: dict
    conflicts: list
    stats: dict


@app.get("/")
async def root():
    return {"message": "Timetable Engine API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": time.time(), "jobs": len(jobs)}


@app.post("/generate", response_model=JobResponse, status_code=202)
async def start_generation(request: StartRequest):
    """Start a background generation run and return its job id."""
    logger.info(
        f"=== GENERATE REQUEST === Allocations: {len(request.allocations)}, "
        f"Class groups: {len(request.classGroups)}, Locked: {len(request.lockedLessons)}"
    )
    job = jobs.submit(request.payload())
    return JobResponse(jobId=job.id, status=job.status)


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Job status plus every message queued since the last poll."""
    job = jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str):
    job = jobs.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(jobId=job.id, status=job.status)


@app.post("/solve", response_model=GenerateResponse)
def solve_timetable(request: SolveRequest):
    """
    Generate a timetable synchronously.

    The run is cancelled once maxTimeSeconds (or SOLVE_TIMEOUT_SECONDS)
    passes, which returns 408.
    """
    start_time = time.time()
    limit = request.maxTimeSeconds or SOLVE_TIMEOUT_SECONDS
    logger.info(f"=== SOLVE REQUEST === Allocations: {len(request.allocations)}, MaxTime: {limit}s")

    cancel_event = threading.Event()
    timer = threading.Timer(limit, cancel_event.set)
    timer.daemon = True
    timer.start()
    try:
        result = generate_timetable(request.payload(), cancel_event=cancel_event)
    except SnapshotError as ve:
        raise HTTPException(status_code=400, detail=f"Invalid input: {ve}")
    except GenerationCancelled as gc:
        elapsed = time.time() - start_time
        logger.warning(f"SOLVE TIMEOUT after {elapsed:.1f}s: {gc}")
        raise HTTPException(
            status_code=408,
            detail={
                "status": "timeout",
                "message": str(gc),
                "placed": gc.placed,
                "total": gc.total,
                "elapsedSeconds": elapsed,
            }
        )
    except Exception as e:
        elapsed = time.time() - start_time
        logger.error(f"SOLVE ERROR: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={
                "status": "error",
                "message": str(e),
                "elapsedSeconds": elapsed,
            }
        )
    finally:
        timer.cancel()

    logger.info(f"=== SOLVE RESULT === Conflicts: {len(result['conflicts'])}, Time: {time.time() - start_time:.1f}s")
    return GenerateResponse(**result)


@app.post("/validate")
async def validate(request: ValidateRequest):
    """Audit an existing timetable against the given inputs."""
    try:
        snapshot = parse_snapshot(request.payload())
    except SnapshotError as ve:
        raise HTTPException(status_code=400, detail=f"Invalid input: {ve}")
    conflicts = validate_timetable(request.model_dump(include={"timetable"})["timetable"], snapshot)
    return {"conflicts": [c.to_dict() for c in conflicts]}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
