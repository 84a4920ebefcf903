from typing import List
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "ShelfRecommender"
    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/app.db"

    # read raw string from env (works with comma-separated values)
    cors_origins: str = ""

    # recommendations
    default_algorithm: str = "hybrid"
    ab_testing_enabled: bool = False
    cache_ttl_hours: float = 1.0
    default_limit: int = 20
    max_limit: int = 100
    # friend picks and similar items stored next to the home list
    related_limit: int = 10

    # onboarding: first pick gets top weight, every next pick loses one step
    onboarding_top_weight: float = 5.0
    onboarding_weight_step: float = 0.5
    onboarding_min_weight: float = 0.5

    metrics_window_days: int = 7

    # background side effects (cache population, profile updates)
    side_effect_workers: int = 2
    side_effect_max_pending: int = 256
    side_effects_inline: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s:
            return []
        if s.startswith("["):
            # also accept JSON list
            return [str(x) for x in json.loads(s)]
        return [part.strip() for part in s.split(",") if part.strip()]


settings = Settings()
