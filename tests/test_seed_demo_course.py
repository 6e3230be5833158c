from scripts import seed_demo_course

import db
import tutor_insights


def test_seed_builds_course_tutor_and_learners(temp_db):
    args = seed_demo_course._build_parser().parse_args(["--learners", "4", "--seed", "3"])

    summary = seed_demo_course.seed(args)

    course = db.get_course_by_slug("process-modeling-101")
    assert summary["course_id"] == course["course_id"]
    assert len(summary["enrolled"]) == 4
    assert db.list_module_numbers(course["course_id"]) == [1, 2, 3, 4]
    assert len(db.list_quiz_questions(course["course_id"], 1)) == 1

    tutor = db.get_user_by_email("tutor@example.com")
    assert tutor["role"] == "tutor"
    assert db.is_tutor_for_course(tutor["user_id"], course["course_id"])

    snapshot = tutor_insights.build_tutor_course_snapshot(course["course_id"])
    assert snapshot.stats.total_enrollments == 4


def test_seed_is_rerunnable(temp_db):
    args = seed_demo_course._build_parser().parse_args(["--learners", "2"])
    seed_demo_course.seed(args)

    again = seed_demo_course.seed(args)

    assert again["enrolled"] == []
    assert len(db.list_courses()) == 1
