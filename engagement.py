"""Learner engagement status derived from recent activity telemetry."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import db

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "idle",
    "active",
    "video_play",
    "video_pause",
    "video_seek",
    "video_complete",
    "quiz_attempt",
)

ENGAGED = "engaged"
ATTENTION_DRIFT = "attention_drift"
CONTENT_FRICTION = "content_friction"
UNKNOWN = "unknown"
STATUSES = (ENGAGED, ATTENTION_DRIFT, CONTENT_FRICTION, UNKNOWN)

RECENT_WINDOW = timedelta(minutes=15)
MAX_RECENT_EVENTS = 20
IDLE_EVENTS_FOR_DRIFT = 2
FAILED_QUIZZES_FOR_FRICTION = 2
REWINDS_FOR_FRICTION = 3

_WINDOW_TEXT = f"the last {int(RECENT_WINDOW.total_seconds() // 60)} minutes"


@dataclass(frozen=True)
class EngagementStatus:
    status: str
    reason: str


def _payload(event: Mapping[str, Any]) -> Mapping[str, Any]:
    payload = event.get("payload")
    return payload if isinstance(payload, Mapping) else {}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_failed_quiz(event: Mapping[str, Any]) -> bool:
    return event.get("event_type") == "quiz_attempt" and _payload(event).get("passed") is False


def _is_rewind(event: Mapping[str, Any]) -> bool:
    if event.get("event_type") != "video_seek":
        return False
    payload = _payload(event)
    start = _number(payload.get("fromSeconds"))
    end = _number(payload.get("toSeconds"))
    return start is not None and end is not None and end < start


def _recent_events(events: Iterable[Mapping[str, Any]], now: datetime) -> List[Mapping[str, Any]]:
    cutoff = now - RECENT_WINDOW
    dated = []
    for event in events:
        created = db.parse_timestamp(event.get("created_at"))
        if created is None or created < cutoff or created > now + timedelta(minutes=1):
            continue
        dated.append((created, event))
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [event for _, event in dated[:MAX_RECENT_EVENTS]]


def derive_engagement_status(events: Iterable[Mapping[str, Any]], now: Optional[datetime] = None) -> EngagementStatus:
    """Classify a learner from their recent events.

    Idle signals win over friction signals: a learner who walked away is not
    struggling with the content.
    """
    current = db.coerce_to_utc(now) if now else db.utcnow()
    recent = _recent_events(events, current)
    if not recent:
        return EngagementStatus(UNKNOWN, f"No activity in {_WINDOW_TEXT}")

    latest = recent[0]
    if latest.get("event_type") == "idle":
        seconds = _number(_payload(latest).get("idleSeconds"))
        if seconds is not None and seconds > 0:
            return EngagementStatus(ATTENTION_DRIFT, f"Idle for {int(seconds)} seconds")
        return EngagementStatus(ATTENTION_DRIFT, "Learner went idle")

    idle_count = sum(1 for event in recent if event.get("event_type") == "idle")
    if idle_count >= IDLE_EVENTS_FOR_DRIFT:
        return EngagementStatus(ATTENTION_DRIFT, f"{idle_count} idle periods in {_WINDOW_TEXT}")

    failed_quizzes = sum(1 for event in recent if _is_failed_quiz(event))
    if failed_quizzes >= FAILED_QUIZZES_FOR_FRICTION:
        return EngagementStatus(CONTENT_FRICTION, f"{failed_quizzes} failed quiz attempts in {_WINDOW_TEXT}")

    rewinds = sum(1 for event in recent if _is_rewind(event))
    if rewinds >= REWINDS_FOR_FRICTION:
        return EngagementStatus(CONTENT_FRICTION, f"Rewound the video {rewinds} times in {_WINDOW_TEXT}")

    return EngagementStatus(ENGAGED, f"Active in {_WINDOW_TEXT} ({latest.get('event_type')})")


def summarize_statuses(statuses: Iterable[Optional[str]]) -> Dict[str, int]:
    summary = {status: 0 for status in STATUSES}
    for status in statuses:
        summary[status if status in summary else UNKNOWN] += 1
    return summary


def record_activity_event(
    user_id: str,
    course_id: str,
    event_type: str,
    *,
    module_no: Optional[int] = None,
    topic_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Store an event together with the status it puts the learner in."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown activity event type: {event_type}")
    current = db.coerce_to_utc(now) if now else db.utcnow()
    history = db.list_learner_activity(
        user_id,
        course_id,
        since=current - RECENT_WINDOW,
        limit=MAX_RECENT_EVENTS,
    )
    incoming = {"event_type": event_type, "payload": payload or {}, "created_at": current}
    derived = derive_engagement_status([incoming, *history], now=current)
    event = db.insert_activity_event(
        user_id,
        course_id,
        event_type,
        module_no=module_no,
        topic_id=topic_id,
        payload=payload,
        derived_status=derived.status,
        status_reason=derived.reason,
        created_at=current,
    )
    logger.debug("Activity %s for user %s in course %s -> %s", event_type, user_id, course_id, derived.status)
    return event


def current_status(latest_event: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> EngagementStatus:
    """Status of a learner given their latest event; stale events read as unknown."""
    if not latest_event:
        return EngagementStatus(UNKNOWN, "No activity recorded")
    current = db.coerce_to_utc(now) if now else db.utcnow()
    created = db.parse_timestamp(latest_event.get("created_at"))
    if created is None or current - created > RECENT_WINDOW:
        return EngagementStatus(UNKNOWN, f"No activity in {_WINDOW_TEXT}")
    status = latest_event.get("derived_status")
    if status not in STATUSES:
        return EngagementStatus(UNKNOWN, "Status not derived")
    return EngagementStatus(status, latest_event.get("status_reason") or "")


def course_activity_overview(course_id: str, enrolled_user_ids: Sequence[str], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Latest event per learner plus a status summary covering every enrolled learner."""
    latest_by_user = {event["user_id"]: event for event in db.list_latest_course_activity(course_id)}
    learners = []
    statuses = []
    for user_id in enrolled_user_ids:
        event = latest_by_user.get(user_id)
        status = current_status(event, now=now)
        statuses.append(status.status)
        if event:
            learners.append({**event, "current_status": status.status, "current_reason": status.reason})
    return {"learners": learners, "summary": summarize_statuses(statuses)}
