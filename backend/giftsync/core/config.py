from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "GiftSync API"
    environment: str = "local"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    # Database: sqlite+aiosqlite:///./giftsync.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./giftsync.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    # Mode switch: when off the engine runs against the local cache only
    remote_backend_enabled: bool = True
    # per-user engines kept in memory by the API
    selection_engine_cache_size: int = 256

    # Local selection cache: file | redis | memory
    local_cache_backend: str = "file"
    local_cache_path: str = "./.giftsync/selections.json"
    local_cache_key: str = "giftsync:selections"
    redis_dsn: str = "redis://localhost:6379/0"

    # Recommendation oracle (empty url = disabled)
    recommendations_url: str = ""
    recommendations_timeout_s: float = 20.0

    default_ai_model: str = "gpt-4o-mini"
    restored_model_tag: str = "restored-from-local"

    access_token_expire_minutes: int = 60 * 24 * 7
    # SECURITY: override via JWT_SECRET_KEY env var
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    log_level: str = "INFO"
    log_file: str = ""

    @property
    def local_cache_dir(self) -> Path:
        return Path(self.local_cache_path).parent

    def local_cache_path_for(self, user_id: int | str) -> Path:
        """Per-user state file, one cache namespace per signed-in user."""
        base = Path(self.local_cache_path)
        return base.with_name(f"{base.stem}-{user_id}{base.suffix or '.json'}")


settings = Settings()
