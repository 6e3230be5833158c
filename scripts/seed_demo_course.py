"""Seed a demo course with a tutor, learners, quizzes and progress."""
from __future__ import annotations

import argparse
import random
from datetime import timedelta
from typing import Dict, List

import db
from engagement import record_activity_event
from passwords import hash_password

MODULES = [
    ("Process basics", ["What a process is", "Events and activities"]),
    ("Gateways", ["Exclusive gateways", "Parallel gateways"]),
    ("Collaboration", ["Pools and lanes", "Message flows"]),
    ("Review", ["Putting it together"]),
]

QUIZ = {
    1: [("Which element starts a process?", ["Start event", "Gateway", "Lane"], 0)],
    2: [("Which gateway splits into all branches?", ["Exclusive", "Parallel", "Event-based"], 1)],
    3: [("What connects two pools?", ["Sequence flow", "Message flow", "Association"], 1)],
    4: [("A lane represents…", ["A role", "A data object", "A timer"], 0)],
}

LEARNERS = ["alice", "peter", "marco", "sara", "lena", "tom"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--slug", default="process-modeling-101", help="Course slug (default: process-modeling-101)")
    parser.add_argument("--title", default="Process Modeling 101", help="Course title")
    parser.add_argument("--tutor-email", default="tutor@example.com", help="Tutor login email")
    parser.add_argument("--password", default="demo-password", help="Password for every seeded account")
    parser.add_argument("--learners", type=int, default=len(LEARNERS), help="Number of learners to enroll")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for progress (default: 7)")
    return parser


def _ensure_user(email: str, full_name: str, password_hash: str, role: str) -> Dict:
    user = db.get_user_by_email(email)
    if user:
        if user["role"] != role:
            db.update_user_role(user["user_id"], role)
        return user
    return db.create_user(email, full_name, password_hash, role=role)


def seed(args: argparse.Namespace) -> Dict[str, object]:
    db.init()
    rng = random.Random(args.seed)
    password_hash = hash_password(args.password)

    course = db.get_course_by_slug(args.slug)
    if course is None:
        course = db.create_course(args.title, args.slug, "Model business processes step by step.")
        db.create_topic(course["course_id"], 0, "Welcome", topic_number=1, module_name="Introduction")
        for module_no, (module_name, topics) in enumerate(MODULES, start=1):
            for number, topic_name in enumerate(topics, start=1):
                db.create_topic(
                    course["course_id"],
                    module_no,
                    topic_name,
                    topic_number=number,
                    module_name=module_name,
                    content=f"{topic_name} explained with a worked example.",
                )
            for position, (prompt, options, correct) in enumerate(QUIZ.get(module_no, [])):
                db.add_quiz_question(course["course_id"], module_no, prompt, options, correct, position)

    tutor = _ensure_user(args.tutor_email, "Demo Tutor", password_hash, "tutor")
    tutor_id = db.ensure_tutor_profile(tutor["user_id"], display_name="Demo Tutor", headline="Process modeling coach")
    db.assign_tutor(course["course_id"], tutor_id, "lead")

    now = db.utcnow()
    enrolled: List[str] = []
    for index in range(args.learners):
        name = LEARNERS[index % len(LEARNERS)]
        suffix = "" if index < len(LEARNERS) else str(index)
        user = _ensure_user(f"{name}{suffix}@example.com", f"{name.title()}{suffix}", password_hash, "learner")
        enrolled_at = now - timedelta(days=rng.randint(0, 30))
        _, created = db.enroll_user(user["user_id"], course["course_id"], enrolled_at=enrolled_at)
        if not created:
            continue
        enrolled.append(user["email"])

        passed_modules = rng.randint(0, len(MODULES))
        for module_no in range(1, passed_modules + 1):
            updated_at = enrolled_at + timedelta(days=module_no)
            db.upsert_module_progress(user["user_id"], course["course_id"], module_no, True, updated_at=min(updated_at, now))
        record_activity_event(user["user_id"], course["course_id"], "active", payload={"seeded": True})

    return {"course_id": course["course_id"], "slug": course["slug"], "tutor": tutor["email"], "enrolled": enrolled}


def main() -> None:
    args = _build_parser().parse_args()
    summary = seed(args)
    print(f"Course {summary['slug']} ({summary['course_id']})")
    print(f"Tutor login: {summary['tutor']}")
    print(f"Enrolled {len(summary['enrolled'])} new learners")
    for email in summary["enrolled"]:
        print("  ", email)


if __name__ == "__main__":
    main()
