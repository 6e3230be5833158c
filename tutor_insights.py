"""Per-course roster digest for tutors and the assistant prompt built from it."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import db

ROSTER_PROMPT_LIMIT = 40
AT_RISK_PERCENT = 50
RECENT_DAYS = 7


class CourseNotFoundError(LookupError):
    pass


@dataclass
class TutorLearnerSnapshot:
    user_id: str
    full_name: str
    email: str
    enrolled_at: datetime
    completed_modules: int
    total_modules: int
    percent: int
    last_activity: Optional[datetime] = None


@dataclass
class TutorCourseStats:
    total_enrollments: int
    new_this_week: int
    average_completion: int
    active_this_week: int
    at_risk_learners: int


@dataclass
class TutorCourseSnapshot:
    course_id: str
    title: str
    slug: str
    description: Optional[str]
    stats: TutorCourseStats
    learners: List[TutorLearnerSnapshot] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "course": {
                "courseId": self.course_id,
                "title": self.title,
                "slug": self.slug,
                "description": self.description,
            },
            "stats": {
                "totalEnrollments": self.stats.total_enrollments,
                "newThisWeek": self.stats.new_this_week,
                "averageCompletion": self.stats.average_completion,
                "activeThisWeek": self.stats.active_this_week,
                "atRiskLearners": self.stats.at_risk_learners,
            },
            "learners": [
                {
                    "userId": learner.user_id,
                    "fullName": learner.full_name,
                    "email": learner.email,
                    "enrolledAt": db.to_iso(learner.enrolled_at),
                    "completedModules": learner.completed_modules,
                    "totalModules": learner.total_modules,
                    "percent": learner.percent,
                    "lastActivity": db.to_iso(learner.last_activity),
                }
                for learner in self.learners
            ],
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _completion_percent(completed: int, total: int, *, floor: bool) -> int:
    if total == 0:
        return 0
    ratio = completed * 100 / total
    return min(100, math.floor(ratio) if floor else _round_half_up(ratio))


def _days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from ``earlier`` to ``later``, truncated toward zero."""
    seconds = (later - earlier).total_seconds()
    return int(seconds / 86400)


def _passed_modules_by_user(course_id: str) -> Dict[str, Dict[str, Any]]:
    progress: Dict[str, Dict[str, Any]] = {}
    for row in db.list_module_progress(course_id):
        entry = progress.setdefault(row["user_id"], {"passed": set(), "last_activity": None})
        if row["quiz_passed"]:
            entry["passed"].add(row["module_no"])
        updated_at = row["updated_at"]
        if updated_at and (entry["last_activity"] is None or updated_at > entry["last_activity"]):
            entry["last_activity"] = updated_at
    return progress


def compute_learner_progress(course_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Floored completion per enrolled learner, as shown on the tutor progress table."""
    total_modules = len(db.list_module_numbers(course_id))
    progress = _passed_modules_by_user(course_id)
    learners = []
    for enrollment in db.list_course_enrollments(course_id):
        if user_id and enrollment["user_id"] != user_id:
            continue
        completed = len(progress.get(enrollment["user_id"], {}).get("passed", ()))
        learners.append(
            {
                "user_id": enrollment["user_id"],
                "full_name": enrollment["full_name"],
                "email": enrollment["email"],
                "enrolled_at": enrollment["enrolled_at"],
                "completed_modules": completed,
                "total_modules": total_modules,
                "percent": _completion_percent(completed, total_modules, floor=True),
            }
        )
    return {"learners": learners, "total_modules": total_modules}


def build_tutor_course_snapshot(course_id: str, now: Optional[datetime] = None) -> TutorCourseSnapshot:
    course = db.get_course(course_id)
    if not course:
        raise CourseNotFoundError("Course not found")

    total_modules = len(db.list_module_numbers(course_id))
    progress = _passed_modules_by_user(course_id)

    learners: List[TutorLearnerSnapshot] = []
    for enrollment in db.list_course_enrollments(course_id):
        enrolled_at = db.parse_timestamp(enrollment["enrolled_at"])
        entry = progress.get(enrollment["user_id"])
        completed = len(entry["passed"]) if entry else 0
        learners.append(
            TutorLearnerSnapshot(
                user_id=enrollment["user_id"],
                full_name=enrollment["full_name"],
                email=enrollment["email"],
                enrolled_at=enrolled_at,
                completed_modules=completed,
                total_modules=total_modules,
                percent=_completion_percent(completed, total_modules, floor=False),
                last_activity=(entry or {}).get("last_activity") or enrolled_at,
            )
        )

    current = db.coerce_to_utc(now) if now else db.utcnow()
    new_this_week = sum(1 for learner in learners if _days_between(current, learner.enrolled_at) <= RECENT_DAYS)
    active_this_week = sum(
        1
        for learner in learners
        if learner.last_activity and _days_between(current, learner.last_activity) <= RECENT_DAYS
    )
    at_risk = sum(1 for learner in learners if learner.percent < AT_RISK_PERCENT)
    average = _round_half_up(sum(learner.percent for learner in learners) / len(learners)) if learners else 0

    return TutorCourseSnapshot(
        course_id=course["course_id"],
        title=course["course_name"],
        slug=course["slug"],
        description=course["description"],
        stats=TutorCourseStats(
            total_enrollments=len(learners),
            new_this_week=new_this_week,
            average_completion=average,
            active_this_week=active_this_week,
            at_risk_learners=at_risk,
        ),
        learners=learners,
    )


def _format_date(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year}"


def format_tutor_snapshot(snapshot: TutorCourseSnapshot) -> str:
    stats = snapshot.stats
    roster_lines = []
    for index, learner in enumerate(snapshot.learners[:ROSTER_PROMPT_LIMIT], start=1):
        last_activity = _format_date(learner.last_activity) if learner.last_activity else "unknown"
        roster_lines.append(
            f"{index}. {learner.full_name} ({learner.email}) - {learner.percent}% complete "
            f"({learner.completed_modules}/{learner.total_modules} modules). "
            f"Enrolled {_format_date(learner.enrolled_at)}. Last activity {last_activity}."
        )

    lines = [
        f"Course: {snapshot.title} (slug: {snapshot.slug})",
        f"Description: {snapshot.description}" if snapshot.description else None,
        (
            f"Stats: total learners {stats.total_enrollments}, new this week {stats.new_this_week}, "
            f"average completion {stats.average_completion}%, active in last 7 days {stats.active_this_week}, "
            f"at risk {stats.at_risk_learners}."
        ),
        f"Learner roster (top {ROSTER_PROMPT_LIMIT}):",
        "\n".join(roster_lines) or "No learners yet.",
    ]
    return "\n".join(line for line in lines if line)


def build_assistant_prompt(snapshot: TutorCourseSnapshot, question: str) -> str:
    return "\n".join([format_tutor_snapshot(snapshot), "", f"Tutor question: {question}", "Answer:"])
