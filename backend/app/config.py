from pathlib import Path
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{BASE_DIR / 'yomu.db'}"
    gemini_key: str = ""
    openai_key: str = ""
    anthropic_api_key: str = ""
    anthropic_key: str = ""
    log_dir: Path = BASE_DIR / "data" / "logs"

    # Planning
    default_lesson_id: int = 25
    default_vocab_pack_id: int = 501
    mastery_threshold: int = 50
    max_level: int = 10

    # Sentence key-point pass policy: passed when hits >= min_hits OR hit rate >= min_hit_rate
    sentence_pass_min_hits: int = 3
    sentence_pass_min_hit_rate: float = 0.7

    # On-demand drill generation
    generation_timeout_s: int = 45
    generation_max_retries: int = 1
    generation_cache_ttl_s: int = 7 * 24 * 3600

    # Lesson unlock by streak of high-accuracy sessions
    unlock_streak_sessions: int = 3
    unlock_min_grammar_accuracy: float = 0.85

    model_config = {"env_file": [BASE_DIR / ".env", BASE_DIR.parent / ".env"], "extra": "ignore"}


settings = Settings()
