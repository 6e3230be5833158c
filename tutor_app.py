# tutor_app.py — tutor-facing API: roster, progress, analytics and the assistant

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import db
import llm_client
import sessions
import tutor_insights
from auth import AuthContext, TUTOR_ROLES, install_error_handlers, require_tutor, router as auth_router
from env_validation import get_settings, validate_environment
from passwords import verify_password
from schemas import AssistantQueryBody, LoginBody, TutorApplicationBody

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        db.init()
        yield
    except Exception as e:
        logger.error("Failed to initialize tutor backend: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="MetaLearn tutor backend", version="1.0.0", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().frontend_app_urls,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
install_error_handlers(app)
app.include_router(auth_router)


def _ensure_course_access(auth: AuthContext, course_id: str) -> None:
    if not db.is_tutor_for_course(auth.user_id, course_id):
        raise HTTPException(status_code=403, detail="Tutor is not assigned to this course")


# ---------- Health ----------
@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "tutor-backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------- Auth ----------
@app.post("/tutors/login")
def tutor_login(body: LoginBody):
    email = body.email.strip().lower() if isinstance(body.email, str) else ""
    password = body.password if isinstance(body.password, str) else ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = db.get_user_by_email(email)
    if not user or user["role"] not in TUTOR_ROLES:
        raise HTTPException(status_code=403, detail="Tutor account required")

    if not verify_password(password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Wrong email or wrong password")

    tokens = sessions.create_session(user["user_id"], user["role"])
    return {
        "user": {
            "id": user["user_id"],
            "email": user["email"],
            "fullName": user["full_name"],
            "role": user["role"],
            "tutorId": user.get("tutor_id"),
            "displayName": user.get("display_name") or user["full_name"],
        },
        "session": sessions.session_payload(tokens),
    }


# ---------- Assistant ----------
@app.post("/tutors/assistant/query")
def tutor_assistant_query(body: AssistantQueryBody, auth: AuthContext = Depends(require_tutor)):
    course_id = body.course_id.strip() if isinstance(body.course_id, str) else ""
    question = body.question.strip() if isinstance(body.question, str) else ""
    if not course_id:
        raise HTTPException(status_code=400, detail="courseId is required")
    if not question:
        raise HTTPException(status_code=400, detail="question is required")

    _ensure_course_access(auth, course_id)

    try:
        snapshot = tutor_insights.build_tutor_course_snapshot(course_id)
        prompt = tutor_insights.build_assistant_prompt(snapshot, question)
        answer = llm_client.generate_tutor_copilot_answer(prompt)
    except Exception as exc:
        logger.exception("Tutor assistant query failed for course %s", course_id)
        message = str(exc) or "Tutor assistant is unavailable right now. Please try again."
        return JSONResponse(status_code=500, content={"message": message})
    return {"answer": answer}


# ---------- Courses ----------
@app.get("/tutors/me/courses")
def tutor_courses(auth: AuthContext = Depends(require_tutor)):
    return {
        "courses": [
            {
                "courseId": row["course_id"],
                "slug": row["slug"],
                "title": row["course_name"],
                "description": row["description"],
                "role": row["role"],
            }
            for row in db.list_tutor_courses(auth.user_id)
        ]
    }


@app.get("/tutors/{course_id}/enrollments")
def tutor_course_enrollments(course_id: str, auth: AuthContext = Depends(require_tutor)):
    _ensure_course_access(auth, course_id)
    return {
        "enrollments": [
            {
                "enrollmentId": row["enrollment_id"],
                "enrolledAt": row["enrolled_at"],
                "status": row["status"],
                "userId": row["user_id"],
                "fullName": row["full_name"],
                "email": row["email"],
            }
            for row in db.list_course_enrollments(course_id, newest_first=True)
        ]
    }


@app.get("/tutors/{course_id}/progress")
def tutor_course_progress(course_id: str, auth: AuthContext = Depends(require_tutor)):
    _ensure_course_access(auth, course_id)
    progress = tutor_insights.compute_learner_progress(course_id)
    return {
        "learners": [
            {
                "userId": row["user_id"],
                "fullName": row["full_name"],
                "email": row["email"],
                "enrolledAt": row["enrolled_at"],
                "completedModules": row["completed_modules"],
                "totalModules": row["total_modules"],
                "percent": row["percent"],
            }
            for row in progress["learners"]
        ],
        "totalModules": progress["total_modules"],
    }


@app.get("/tutors/{course_id}/snapshot")
def tutor_course_snapshot(course_id: str, auth: AuthContext = Depends(require_tutor)):
    _ensure_course_access(auth, course_id)
    try:
        snapshot = tutor_insights.build_tutor_course_snapshot(course_id)
    except tutor_insights.CourseNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return snapshot.to_dict()


# ---------- Tutor applications ----------
@app.post("/tutor-applications", status_code=201)
def submit_tutor_application(body: TutorApplicationBody):
    application = db.create_tutor_application(body.model_dump())
    logger.info("Tutor application %s submitted", application["application_id"])
    return {
        "application": {
            "id": application["application_id"],
            "status": application["status"],
            "submittedAt": application["created_at"],
        }
    }
