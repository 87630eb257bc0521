"""Configuration loaded from environment (.env) and defaults."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Locate the project root .env file regardless of CWD
_THIS_DIR = Path(__file__).resolve().parent          # igen/
_PROJECT_ROOT = _THIS_DIR.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE) if _ENV_FILE.exists() else ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Data directory for file-backed stores and blobs
    igen_data_dir: str = "./data"

    # Postgres URL. When set, generation and sync-status records live in Postgres.
    igen_database_url: str | None = None

    # Public base URL providers use to reach /webhooks/{provider}
    igen_public_url: str = "http://localhost:8000"

    # HMAC secret for callback URL tokens. Empty disables webhook token checks.
    igen_webhook_secret: str | None = None

    # fal.ai
    fal_key: str | None = None
    fal_queue_url: str = "https://queue.fal.run"
    fal_api_url: str = "https://api.fal.ai/v1"

    # AI Horde
    horde_api_key: str = "0000000000"
    horde_api_url: str = "https://aihorde.net/api/v2"

    # Endpoint routing: "prefix=provider" pairs, comma-separated. Unmatched → default.
    igen_default_provider: str = "fal"
    igen_provider_routes: str = "horde/=horde"

    # Bounded timeouts for every external call
    igen_http_timeout_seconds: float = 30.0
    igen_db_timeout_ms: int = 10_000

    # Poll sweep: skip records younger than the grace period, then re-poll at a fixed interval
    igen_poll_grace_seconds: float = 60.0
    igen_poll_interval_seconds: float = 30.0
    igen_poll_batch_size: int = 50
    igen_sweeper_enabled: bool = True

    # A catalog sync queued or running longer than this is treated as abandoned (process died mid-run)
    igen_catalog_sync_stale_seconds: float = 3600.0

    igen_log_level: str = "INFO"

    # CORS origins (comma-separated)
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Server port
    port: int = 8000

    @property
    def data_dir(self) -> Path:
        """Get data directory as Path.

        Relative paths are resolved against the project root (not CWD).
        """
        p = Path(self.igen_data_dir)
        if not p.is_absolute():
            return (_PROJECT_ROOT / p).resolve()
        return p.resolve()

    @property
    def blobs_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def catalog_dir(self) -> Path:
        return self.data_dir / "catalog"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def provider_routes(self) -> list[tuple[str, str]]:
        """Parse ``prefix=provider`` pairs; longest prefix first."""
        routes: list[tuple[str, str]] = []
        for pair in self.igen_provider_routes.split(","):
            prefix, sep, provider = pair.partition("=")
            if sep and prefix.strip() and provider.strip():
                routes.append((prefix.strip(), provider.strip().lower()))
        return sorted(routes, key=lambda r: len(r[0]), reverse=True)

    def ensure_dirs(self) -> None:
        """Ensure all data directories exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.catalog_dir.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_dirs()
    return settings
