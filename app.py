# app.py — MetaLearn course platform API
# - Courses, lessons, quizzes, enrollment, activity telemetry, learner dashboard, admin
# - Every route is served both at the root and under /api

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware

import db
import engagement
import sessions
import tutor_insights
from auth import (
    AuthContext,
    install_error_handlers,
    optional_auth,
    require_admin,
    require_auth,
    require_tutor,
    router as auth_router,
)
from env_validation import get_env_bool, get_settings, validate_environment
from passwords import hash_password, verify_password
from schemas import (
    ActivityEventBody,
    ApplicationDecisionBody,
    CourseCreateBody,
    CourseUpdateBody,
    LoginBody,
    QuizAttemptBody,
    QuizQuestionBody,
    RegisterBody,
    RoleUpdateBody,
    TopicCreateBody,
    TutorAssignmentBody,
)

logger = logging.getLogger(__name__)

QUIZ_PASS_PERCENT = 70
ACTIVITY_HISTORY_LIMIT = 50


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        db.init()
        if get_env_bool("PURGE_EXPIRED_SESSIONS_ON_START", True):
            sessions.purge_expired_sessions()
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="MetaLearn course platform", version="1.0.0", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().frontend_app_urls,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
install_error_handlers(app)

api = APIRouter()


# ---------- Serializers ----------
def _user_out(user: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["user_id"],
        "email": user["email"],
        "fullName": user["full_name"],
        "role": user["role"],
        "createdAt": user.get("created_at"),
    }


def _course_out(course: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "courseId": course["course_id"],
        "courseName": course["course_name"],
        "slug": course["slug"],
        "description": course["description"],
        "isPublished": course["is_published"],
        "createdAt": course["created_at"],
        "updatedAt": course["updated_at"],
    }


def _topic_out(topic: Mapping[str, Any], include_content: bool = False) -> Dict[str, Any]:
    data = {
        "topicId": topic["topic_id"],
        "courseId": topic["course_id"],
        "moduleNo": topic["module_no"],
        "moduleName": topic["module_name"],
        "topicNumber": topic["topic_number"],
        "topicName": topic["topic_name"],
        "videoUrl": topic["video_url"],
    }
    if include_content:
        data["content"] = topic.get("content")
    return data


def _event_out(event: Mapping[str, Any]) -> Dict[str, Any]:
    data = {
        "eventId": event["event_id"],
        "userId": event["user_id"],
        "courseId": event["course_id"],
        "moduleNo": event.get("module_no"),
        "topicId": event.get("topic_id"),
        "topicTitle": event.get("topic_title"),
        "eventType": event["event_type"],
        "payload": event.get("payload") or {},
        "derivedStatus": event.get("derived_status"),
        "statusReason": event.get("status_reason"),
        "createdAt": event["created_at"],
    }
    if "current_status" in event:
        data["currentStatus"] = event["current_status"]
        data["currentReason"] = event["current_reason"]
    return data


def _application_out(application: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": application["application_id"],
        "fullName": application["full_name"],
        "email": application["email"],
        "phone": application["phone"],
        "headline": application["headline"],
        "courseTitle": application["course_title"],
        "courseDescription": application["course_description"],
        "targetAudience": application["target_audience"],
        "expertiseArea": application["expertise_area"],
        "experienceYears": application["experience_years"],
        "availability": application["availability"],
        "status": application["status"],
        "submittedAt": application["created_at"],
        "reviewedAt": application["reviewed_at"],
    }


# ---------- Guards ----------
def _get_course_or_404(course_id: str) -> Dict[str, Any]:
    course = db.get_course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found")
    return course


def _require_enrollment(auth: AuthContext, course_id: str) -> None:
    _get_course_or_404(course_id)
    if auth.is_admin:
        return
    if not db.get_enrollment(auth.user_id, course_id):
        raise HTTPException(status_code=403, detail="Enrollment required")


def _require_course_staff(auth: AuthContext, course_id: str) -> None:
    _get_course_or_404(course_id)
    if auth.is_admin:
        return
    if not db.is_tutor_for_course(auth.user_id, course_id):
        raise HTTPException(status_code=403, detail="Tutor is not assigned to this course")


# ---------- Root / health ----------
@app.get("/")
def root():
    return {"message": "Course Platform API"}


@api.get("/health")
def health():
    return {"status": "ok", "service": "backend", "timestamp": datetime.now(timezone.utc).isoformat()}


# ---------- Auth ----------
@api.post("/auth/register", status_code=201)
def auth_register(body: RegisterBody):
    if db.get_user_by_email(body.email):
        raise HTTPException(status_code=409, detail="Email is already registered")
    try:
        user = db.create_user(body.email, body.full_name.strip(), hash_password(body.password))
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email is already registered") from exc
    tokens = sessions.create_session(user["user_id"], user["role"])
    logger.info("Registered learner %s", user["user_id"])
    return {"user": _user_out(user), "session": sessions.session_payload(tokens)}


@api.post("/auth/login")
def auth_login(body: LoginBody):
    email = body.email.strip().lower() if isinstance(body.email, str) else ""
    password = body.password if isinstance(body.password, str) else ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = db.get_user_by_email(email)
    if not user or not verify_password(password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Wrong email or wrong password")

    tokens = sessions.create_session(user["user_id"], user["role"])
    return {"user": _user_out(user), "session": sessions.session_payload(tokens)}


@api.get("/auth/me")
def auth_me(auth: AuthContext = Depends(require_auth)):
    user = db.get_user(auth.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": _user_out(user)}


# ---------- Courses ----------
@api.get("/courses")
def list_courses(auth: Optional[AuthContext] = Depends(optional_auth)):
    include_unpublished = bool(auth and auth.is_admin)
    return {"courses": [_course_out(course) for course in db.list_courses(include_unpublished=include_unpublished)]}


@api.get("/courses/{slug}")
def get_course(slug: str):
    course = db.get_course_by_slug(slug)
    if not course or not course["is_published"]:
        raise HTTPException(status_code=404, detail="Course not found")
    topics = db.list_topics(course["course_id"])
    return {
        "course": _course_out(course),
        "topics": [_topic_out(topic) for topic in topics],
        "totalModules": len(db.list_module_numbers(course["course_id"])),
    }


@api.post("/courses", status_code=201)
def create_course(body: CourseCreateBody, auth: AuthContext = Depends(require_admin)):
    if db.get_course_by_slug(body.slug):
        raise HTTPException(status_code=409, detail="Slug is already in use")
    course = db.create_course(body.course_name, body.slug, body.description, body.is_published)
    logger.info("Course %s created by %s", course["course_id"], auth.user_id)
    return {"course": _course_out(course)}


@api.patch("/courses/{course_id}")
def update_course(course_id: str, body: CourseUpdateBody, auth: AuthContext = Depends(require_admin)):
    _get_course_or_404(course_id)
    fields = body.model_dump(exclude_unset=True)
    if fields.get("slug"):
        existing = db.get_course_by_slug(fields["slug"])
        if existing and existing["course_id"] != course_id:
            raise HTTPException(status_code=409, detail="Slug is already in use")
    return {"course": _course_out(db.update_course(course_id, fields))}


@api.delete("/courses/{course_id}")
def delete_course(course_id: str, auth: AuthContext = Depends(require_admin)):
    if not db.delete_course(course_id):
        raise HTTPException(status_code=404, detail="Course not found")
    logger.info("Course %s deleted by %s", course_id, auth.user_id)
    return {"ok": True}


# ---------- Enrollment ----------
@api.post("/courses/{course_id}/enroll")
def enroll(course_id: str, response: Response, auth: AuthContext = Depends(require_auth)):
    course = _get_course_or_404(course_id)
    if not course["is_published"]:
        raise HTTPException(status_code=404, detail="Course not found")
    enrollment, created = db.enroll_user(auth.user_id, course_id)
    response.status_code = 201 if created else 200
    return {
        "enrollment": {
            "enrollmentId": enrollment["enrollment_id"],
            "courseId": enrollment["course_id"],
            "status": enrollment["status"],
            "enrolledAt": enrollment["enrolled_at"],
        },
        "created": created,
    }


@api.get("/users/me/enrollments")
def my_enrollments(auth: AuthContext = Depends(require_auth)):
    enrollments = []
    for row in db.list_user_enrollments(auth.user_id):
        progress = tutor_insights.compute_learner_progress(row["course_id"], user_id=auth.user_id)
        learner = progress["learners"][0] if progress["learners"] else None
        enrollments.append(
            {
                "enrollmentId": row["enrollment_id"],
                "courseId": row["course_id"],
                "courseName": row["course_name"],
                "slug": row["slug"],
                "status": row["status"],
                "enrolledAt": row["enrolled_at"],
                "completedModules": learner["completed_modules"] if learner else 0,
                "totalModules": progress["total_modules"],
                "percent": learner["percent"] if learner else 0,
            }
        )
    return {"enrollments": enrollments}


# ---------- Lessons ----------
@api.get("/lessons/courses/{course_id}/topics")
def list_course_topics(course_id: str):
    _get_course_or_404(course_id)
    return {"topics": [_topic_out(topic) for topic in db.list_topics(course_id)]}


@api.get("/lessons/topics/{topic_id}")
def get_topic(topic_id: str, auth: AuthContext = Depends(require_auth)):
    topic = db.get_topic(topic_id)
    if not topic:
        raise HTTPException(status_code=404, detail="Topic not found")
    # Introductions are free to preview.
    if topic["module_no"] > 0 and not db.is_tutor_for_course(auth.user_id, topic["course_id"]):
        _require_enrollment(auth, topic["course_id"])
    return {"topic": _topic_out(topic, include_content=True)}


@api.post("/lessons/courses/{course_id}/topics", status_code=201)
def create_topic(course_id: str, body: TopicCreateBody, auth: AuthContext = Depends(require_admin)):
    _get_course_or_404(course_id)
    topic = db.create_topic(
        course_id,
        body.module_no,
        body.topic_name,
        topic_number=body.topic_number,
        module_name=body.module_name,
        content=body.content,
        video_url=body.video_url,
    )
    return {"topic": _topic_out(topic, include_content=True)}


# ---------- Quiz ----------
@api.get("/quiz/courses/{course_id}/modules/{module_no}")
def get_module_quiz(course_id: str, module_no: int, auth: AuthContext = Depends(require_auth)):
    _require_enrollment(auth, course_id)
    questions = db.list_quiz_questions(course_id, module_no)
    return {
        "moduleNo": module_no,
        "passPercent": QUIZ_PASS_PERCENT,
        "questions": [
            {"questionId": q["question_id"], "prompt": q["prompt"], "options": q["options"]}
            for q in questions
        ],
    }


@api.post("/quiz/courses/{course_id}/modules/{module_no}/attempts", status_code=201)
def submit_quiz_attempt(
    course_id: str,
    module_no: int,
    body: QuizAttemptBody,
    auth: AuthContext = Depends(require_auth),
):
    _require_enrollment(auth, course_id)
    questions = db.list_quiz_questions(course_id, module_no)
    if not questions:
        raise HTTPException(status_code=404, detail="No quiz for this module")
    if len(body.answers) != len(questions):
        raise HTTPException(
            status_code=400,
            detail=f"Expected {len(questions)} answers, got {len(body.answers)}",
        )

    score = sum(1 for question, answer in zip(questions, body.answers) if answer == question["correct_index"])
    total = len(questions)
    passed = score * 100 >= QUIZ_PASS_PERCENT * total

    attempt = db.record_quiz_attempt(auth.user_id, course_id, module_no, score, total, passed)
    progress = db.upsert_module_progress(auth.user_id, course_id, module_no, passed)
    event = engagement.record_activity_event(
        auth.user_id,
        course_id,
        "quiz_attempt",
        module_no=module_no,
        payload={"score": score, "total": total, "passed": passed},
    )
    return {
        "attempt": {
            "attemptId": attempt["attempt_id"],
            "score": score,
            "total": total,
            "passed": passed,
            "createdAt": attempt["created_at"],
        },
        "moduleProgress": {
            "moduleNo": progress["module_no"],
            "quizPassed": progress["quiz_passed"],
            "updatedAt": progress["updated_at"],
        },
        "engagement": {"status": event["derived_status"], "reason": event["status_reason"]},
    }


@api.post("/quiz/courses/{course_id}/modules/{module_no}/questions", status_code=201)
def add_quiz_question(
    course_id: str,
    module_no: int,
    body: QuizQuestionBody,
    auth: AuthContext = Depends(require_admin),
):
    _get_course_or_404(course_id)
    if body.correct_index >= len(body.options):
        raise HTTPException(status_code=400, detail="correctIndex must point at one of the options")
    question = db.add_quiz_question(course_id, module_no, body.prompt, body.options, body.correct_index, body.position)
    return {"question": {"questionId": question["question_id"], "prompt": question["prompt"], "options": question["options"]}}


# ---------- Activity ----------
@api.post("/activity/events", status_code=201)
def record_activity(body: ActivityEventBody, auth: AuthContext = Depends(require_auth)):
    _require_enrollment(auth, body.course_id)
    event = engagement.record_activity_event(
        auth.user_id,
        body.course_id,
        body.event_type,
        module_no=body.module_no,
        topic_id=body.topic_id,
        payload=body.payload,
    )
    return {"event": _event_out(event)}


@api.get("/activity/courses/{course_id}/learners")
def course_activity(course_id: str, auth: AuthContext = Depends(require_tutor)):
    _require_course_staff(auth, course_id)
    enrolled = [row["user_id"] for row in db.list_course_enrollments(course_id)]
    overview = engagement.course_activity_overview(course_id, enrolled)
    return {
        "learners": [_event_out(event) for event in overview["learners"]],
        "summary": overview["summary"],
    }


@api.get("/activity/courses/{course_id}/learners/{user_id}/history")
def learner_activity_history(course_id: str, user_id: str, auth: AuthContext = Depends(require_tutor)):
    _require_course_staff(auth, course_id)
    events = db.list_learner_activity(user_id, course_id, limit=ACTIVITY_HISTORY_LIMIT)
    return {"events": [_event_out(event) for event in events]}


# ---------- Dashboard ----------
@api.get("/dashboard")
def learner_dashboard(auth: AuthContext = Depends(require_auth)):
    courses = []
    for row in db.list_user_enrollments(auth.user_id):
        progress = tutor_insights.compute_learner_progress(row["course_id"], user_id=auth.user_id)
        learner = progress["learners"][0] if progress["learners"] else None
        latest = db.list_learner_activity(auth.user_id, row["course_id"], limit=1)
        status = engagement.current_status(latest[0] if latest else None)
        courses.append(
            {
                "courseId": row["course_id"],
                "courseName": row["course_name"],
                "slug": row["slug"],
                "percent": learner["percent"] if learner else 0,
                "completedModules": learner["completed_modules"] if learner else 0,
                "totalModules": progress["total_modules"],
                "engagement": {"status": status.status, "reason": status.reason},
                "recentAttempts": [
                    {
                        "moduleNo": attempt["module_no"],
                        "score": attempt["score"],
                        "total": attempt["total"],
                        "passed": attempt["passed"],
                        "createdAt": attempt["created_at"],
                    }
                    for attempt in db.list_quiz_attempts(auth.user_id, row["course_id"], limit=5)
                ],
            }
        )
    return {"courses": courses}


# ---------- Admin ----------
@api.get("/admin/users")
def admin_list_users(role: Optional[str] = None, auth: AuthContext = Depends(require_admin)):
    return {"users": [_user_out(user) for user in db.list_users(role=role)]}


@api.patch("/admin/users/{user_id}/role")
def admin_update_role(user_id: str, body: RoleUpdateBody, auth: AuthContext = Depends(require_admin)):
    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    db.update_user_role(user_id, body.role)
    if body.role == "tutor":
        db.ensure_tutor_profile(user_id, display_name=user["full_name"])
    # Access tokens carry the role, so force a fresh login.
    sessions.revoke_user_sessions(user_id)
    logger.info("User %s role changed to %s by %s", user_id, body.role, auth.user_id)
    return {"user": _user_out(db.get_user(user_id))}


@api.post("/admin/courses/{course_id}/tutors", status_code=201)
def admin_assign_tutor(course_id: str, body: TutorAssignmentBody, auth: AuthContext = Depends(require_admin)):
    _get_course_or_404(course_id)
    user = db.get_user(body.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user["role"] not in ("tutor", "admin"):
        raise HTTPException(status_code=400, detail="User must have the tutor role")
    tutor_id = db.ensure_tutor_profile(user["user_id"], display_name=body.display_name or user["full_name"])
    assignment = db.assign_tutor(course_id, tutor_id, body.role)
    return {
        "assignment": {
            "courseTutorId": assignment["course_tutor_id"],
            "courseId": assignment["course_id"],
            "tutorId": assignment["tutor_id"],
            "role": assignment["role"],
            "isActive": bool(assignment["is_active"]),
        }
    }


@api.delete("/admin/courses/{course_id}/tutors/{user_id}")
def admin_unassign_tutor(course_id: str, user_id: str, auth: AuthContext = Depends(require_admin)):
    tutor = db.get_tutor_by_user(user_id)
    if not tutor or not db.deactivate_tutor_assignment(course_id, tutor["tutor_id"]):
        raise HTTPException(status_code=404, detail="Assignment not found")
    return {"ok": True}


@api.get("/admin/tutor-applications")
def admin_list_applications(status: Optional[str] = None, auth: AuthContext = Depends(require_admin)):
    return {"applications": [_application_out(row) for row in db.list_tutor_applications(status=status)]}


@api.post("/admin/tutor-applications/{application_id}/decision")
def admin_decide_application(
    application_id: str,
    body: ApplicationDecisionBody,
    auth: AuthContext = Depends(require_admin),
):
    application = db.get_tutor_application(application_id)
    if not application:
        raise HTTPException(status_code=404, detail="Application not found")
    if application["status"] != "pending":
        raise HTTPException(status_code=409, detail=f"Application already {application['status']}")
    updated = db.set_tutor_application_status(application_id, body.status)
    logger.info("Tutor application %s %s by %s", application_id, body.status, auth.user_id)
    return {"application": _application_out(updated)}


app.include_router(auth_router)
app.include_router(auth_router, prefix="/api")
app.include_router(api)
app.include_router(api, prefix="/api")
