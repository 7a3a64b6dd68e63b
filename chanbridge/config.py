from __future__ import annotations
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHB_", env_file=".env", extra="ignore")

    # Core
    instance_id: str = Field(default="chb-1", description="Instance id bound into every log line.")

    # WhatsApp-style (multi-device, QR pairing)
    whatsapp_enabled: bool = Field(default=False)
    whatsapp_auth_dir: str = Field(default="./data/credentials/whatsapp", description="Credential store key for the session.")
    whatsapp_print_qr: bool = Field(default=True, description="Forward QR challenges to the configured sink.")
    whatsapp_reconnect_delay_s: float = Field(default=2.0, description="Fixed delay before a reconnect attempt.")

    # Discord-style (gateway bot)
    discord_enabled: bool = Field(default=False)
    discord_token: SecretStr | None = Field(default=None, description="Bot token.")
    discord_thread_name_prefix: str = Field(default="chanbridge")
    discord_thread_auto_archive_minutes: int = Field(default=60, description="60|1440|4320|10080")
    discord_fetch_retries: int = Field(default=3, description="Attempts for channel/message REST fetches.")

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

def load_settings() -> Settings:
    return Settings()
