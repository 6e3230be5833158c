import json
import logging
import time
from typing import Any, Optional
from uuid import uuid4

import requests

from env_validation import get_settings

_LLM_LOGGER = logging.getLogger("metalearn.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

TUTOR_COPILOT_SYSTEM_PROMPT = (
    "You are MetaLearn's tutor analytics copilot. Use only the provided learner roster and stats. "
    "Call out concrete numbers, flag at-risk learners, and keep responses concise (3-5 sentences). "
    "If information is missing, say so directly."
)


class LLMError(RuntimeError):
    """The chat-completion provider failed or returned nothing usable."""


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def run_chat_completion(
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: float = 0.2,
    max_tokens: int = 500,
    request_id: Optional[str] = None,
) -> str:
    settings = get_settings()
    payload = {
        "model": settings.llm_model,
        "temperature": temperature,
        "max_tokens": int(max_tokens),
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
    }
    headers = {"Content-Type": "application/json"}
    if settings.openai_api_key:
        headers["Authorization"] = f"Bearer {settings.openai_api_key}"

    call_request_id = request_id or str(uuid4())
    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    outcome = "error"
    try:
        try:
            response = requests.post(
                settings.openai_api_url,
                json=payload,
                headers=headers,
                timeout=settings.llm_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            body = exc.response.text[:300] if exc.response is not None else ""
            raise LLMError(f"LLM-HTTP {status}: {body}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise LLMError(f"LLM error: {exc}") from exc

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens"))

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        message = content.strip() if isinstance(content, str) else ""
        if not message:
            raise LLMError("LLM did not return a chat completion")
        outcome = "ok"
        return message
    finally:
        log_record = {
            "event": "llm_call",
            "request_id": call_request_id,
            "model": settings.llm_model,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "outcome": outcome,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


def generate_tutor_copilot_answer(prompt: str) -> str:
    return run_chat_completion(TUTOR_COPILOT_SYSTEM_PROMPT, prompt, temperature=0.15)
