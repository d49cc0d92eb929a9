import json
from datetime import datetime, timezone
from pathlib import Path

from app.config import settings


def _get_log_path() -> Path:
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return log_dir / f"interactions_{today}.jsonl"


def log_interaction(
    event: str,
    session_id: int | None = None,
    step: int | None = None,
    question_id: str | None = None,
    grammar_id: int | None = None,
    vocab_id: int | None = None,
    is_correct: bool | None = None,
    response_ms: int | None = None,
    **extra,
) -> None:
    """Append one learner event to today's JSONL interaction log."""
    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "session_id": session_id,
        "step": step,
        "question_id": question_id,
        "grammar_id": grammar_id,
        "vocab_id": vocab_id,
        "is_correct": is_correct,
        "response_ms": response_ms,
        **extra,
    }
    entry = {k: v for k, v in entry.items() if v is not None}

    log_path = _get_log_path()
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False) + "\n")
