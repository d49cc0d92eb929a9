"""LLM service using LiteLLM with multi-model fallback.

Drill generation and end-of-session assessment: Gemini Flash (fast, cheap)
→ GPT fallback → Claude Haiku tertiary. Every call is appended to
llm_calls_YYYY-MM-DD.jsonl under settings.log_dir.

Callers treat LLMError / AllProvidersFailed as "service unavailable" and fall
back to offline content; nothing here is required for a session to run.
"""

import json
import os
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import litellm

from app.config import settings

litellm.set_verbose = False


class LLMError(Exception):
    pass


class AllProvidersFailed(LLMError):
    pass


MODELS = [
    {
        "name": "gemini",
        "model": "gemini/gemini-3-flash-preview",
        "key_env": "GEMINI_KEY",
        "key_setting": "gemini_key",
    },
    {
        "name": "openai",
        "model": "gpt-5.2",
        "key_env": "OPENAI_KEY",
        "key_setting": "openai_key",
    },
    {
        "name": "anthropic",
        "model": "claude-haiku-4-5",
        "key_env": "ANTHROPIC_API_KEY",
        "key_setting": "anthropic_api_key",
        "key_settings": ["anthropic_api_key", "anthropic_key"],
    },
]


def _get_api_key(model_config: dict) -> str | None:
    """Get API key from settings or environment."""
    for setting_name in model_config.get("key_settings", [model_config["key_setting"]]):
        key = getattr(settings, setting_name, "")
        if key:
            return key
    return os.environ.get(model_config["key_env"], "") or None


def is_configured() -> bool:
    """True when at least one provider has an API key."""
    return any(_get_api_key(m) for m in MODELS)


def _log_call(
    log_dir: Path,
    model: str,
    success: bool,
    response_time: float,
    error: str | None = None,
    prompt_length: int = 0,
    task_type: str | None = None,
) -> None:
    """Append a log entry for the LLM call."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"llm_calls_{datetime.now():%Y-%m-%d}.jsonl"
    entry = {
        "ts": datetime.now().isoformat(),
        "event": "llm_call",
        "model": model,
        "success": success,
        "response_time_s": round(response_time, 2),
        "error": error,
        "prompt_length": prompt_length,
    }
    if task_type:
        entry["task_type"] = task_type
    with open(log_file, "a") as f:
        f.write(json.dumps(entry) + "\n")


def _strip_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


def generate_completion(
    prompt: str,
    system_prompt: str = "",
    json_mode: bool = True,
    temperature: float = 0.7,
    timeout: int = 60,
    model_override: str | None = None,
    task_type: str | None = None,
    deadline: float | None = None,
) -> dict[str, Any]:
    """Call LLM with automatic fallback across providers.

    Returns parsed JSON dict when json_mode=True, otherwise raw content string
    wrapped as {"content": "..."}.

    When model_override is provided (e.g. "gemini", "openai", "anthropic"),
    only that specific model is tried; there is no fallback to others.

    task_type: optional label for analytics (e.g. "drill_gen", "mastery_assess").

    deadline: optional time.monotonic() value shared by the whole fallback
    chain. Each provider gets at most the time left, and no provider is
    tried once it has passed.
    """
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    if model_override:
        models_to_try = [m for m in MODELS if m["name"] == model_override]
        if not models_to_try:
            raise LLMError(f"Unknown model override: {model_override}")
    else:
        models_to_try = MODELS

    errors: list[str] = []

    for model_config in models_to_try:
        api_key = _get_api_key(model_config)
        if not api_key:
            continue

        call_timeout = timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                errors.append(f"{model_config['name']}: deadline reached")
                break
            call_timeout = min(timeout, remaining)

        start = time.time()
        try:
            kwargs: dict[str, Any] = {
                "model": model_config["model"],
                "messages": messages,
                "temperature": temperature,
                "timeout": call_timeout,
                "api_key": api_key,
            }
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}

            response = litellm.completion(**kwargs)
            elapsed = time.time() - start

            content = response.choices[0].message.content
            _log_call(
                settings.log_dir,
                model_config["model"],
                True,
                elapsed,
                prompt_length=len(prompt),
                task_type=task_type,
            )

            if json_mode:
                return json.loads(_strip_fences(content))
            return {"content": content}

        except Exception as e:
            elapsed = time.time() - start
            errors.append(f"{model_config['name']}: {e}")
            _log_call(
                settings.log_dir,
                model_config["model"],
                False,
                elapsed,
                error=str(e),
                prompt_length=len(prompt),
                task_type=task_type,
            )

    if not errors:
        raise AllProvidersFailed("No LLM provider has an API key configured")
    raise AllProvidersFailed(f"All LLM providers failed: {'; '.join(errors)}")


# --- Drill generation ---

DRILL_SYSTEM_PROMPT = """\
You are a Japanese grammar teacher writing short practice questions for a \
self-study app. Every question tests exactly one grammar pattern. Use natural, \
everyday Japanese. Choice questions have 3-4 options with ids "a".."d" and \
exactly one correct option. Judge questions ask whether a sentence is a \
correct use of the pattern and set correct_answer to "true" or "false"."""


def request_drills(
    grammar_id: int,
    grammar_name: str,
    core_rule: str,
    structure: str,
    examples: list[str],
    count: int,
    difficulty: str,
    timeout: int = 45,
    deadline: float | None = None,
) -> dict[str, Any]:
    """Ask the LLM for `count` drills on one grammar point. Returns the raw JSON object."""
    example_lines = "\n".join(f"- {e}" for e in examples[:5]) or "- (none)"
    prompt = f"""Write {count} {difficulty} practice questions for this grammar point.

GRAMMAR: {grammar_name}
RULE: {core_rule}
STRUCTURE: {structure or "(not given)"}
EXAMPLES:
{example_lines}

Respond with JSON:
{{"drills": [{{"drill_id": "1", "kind": "choice" | "judge", "stem": "...",
  "options": [{{"id": "a", "text": "..."}}, ...], "correct_id": "a",
  "correct_answer": null, "explanation": "...", "grammar_id": {grammar_id}}}, ...],
 "confidence": 0.0-1.0}}"""

    return generate_completion(
        prompt=prompt,
        system_prompt=DRILL_SYSTEM_PROMPT,
        json_mode=True,
        temperature=0.6,
        timeout=timeout,
        task_type="drill_gen",
        deadline=deadline,
    )


# --- End-of-session assessment ---

ASSESS_SYSTEM_PROMPT = """\
You are a supportive Japanese tutor reviewing one day of practice. Suggest \
small mastery adjustments (between -10 and +10) only for grammar points the \
session actually tested, and keep the summary to two short sentences."""


def request_mastery_assessment(session_summary: dict[str, Any], timeout: int = 30) -> dict[str, Any]:
    """Ask the LLM to assess a finished session. Returns the raw JSON object.

    `timeout` bounds the whole fallback chain, not each provider.
    """
    prompt = f"""Here is today's practice session as JSON:

{json.dumps(session_summary, ensure_ascii=False, indent=2)}

Respond with JSON:
{{"mastery_adjustments": [{{"grammar_id": 0, "suggested_delta": 0, "reason": "..."}}],
 "level_recommendation": "maintain" | "up" | "down",
 "summary": "...",
 "confidence": 0.0-1.0}}"""

    return generate_completion(
        prompt=prompt,
        system_prompt=ASSESS_SYSTEM_PROMPT,
        json_mode=True,
        temperature=0.3,
        timeout=timeout,
        task_type="mastery_assess",
        deadline=time.monotonic() + timeout,
    )
