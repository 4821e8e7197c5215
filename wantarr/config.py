from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncConfig(BaseModel):
    """Tuning knobs for the desired-state aggregator."""
    rating_threshold: int = Field(10, ge=1, le=10)
    rated_limit: int = 80
    wanted_limit: int = 30
    progress_limit: int = 10
    buffer_duration: int = 150  # minutes of look-ahead for buffered expansion
    list_name: str = "Jellyfin"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    service_name: str = "Wantarr"
    server_url: str = ""
    locale: str = "fr"
    log_level: str = "INFO"
    sync_token: str = ""  # Optional token protecting the manual sync / listing endpoints

    database_path: str = "/app/data/wantarr.db"

    sync_interval_seconds: float = 60
    sync_concurrency: int = 4
    run_sync_on_startup: bool = True

    trakt_base_url: str = "https://api.trakt.tv"
    trakt_client_id: str = ""
    trakt_list_name: str = "Jellyfin"

    rating_threshold: int = 10
    rated_limit: int = 80
    wanted_limit: int = 30
    progress_limit: int = 10
    buffer_duration: int = 150

    jellyfin_url: str = "http://localhost:8096"
    jellyfin_token: str = ""
    jellyfin_username: str = ""
    jellyfin_password: str = ""

    discord_api_url: str = "https://discord.com/api/v10"
    discord_bot_token: str = ""
    discord_channel_id: str = ""
    discord_guild_id: str = ""  # Guild whose members are welcomed; empty disables member polling
    discord_admin_ids: str = ""  # Comma separated Discord user ids
    reaction_poll_seconds: float = 15

    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    email_debounce_seconds: float = 60

    @property
    def admin_ids(self) -> list[str]:
        return [part.strip() for part in self.discord_admin_ids.split(",") if part.strip()]

    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            rating_threshold=self.rating_threshold,
            rated_limit=self.rated_limit,
            wanted_limit=self.wanted_limit,
            progress_limit=self.progress_limit,
            buffer_duration=self.buffer_duration,
            list_name=self.trakt_list_name,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
