import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingSettings(BaseSettings):
    SPECTRE_LOG_LEVEL: str = "INFO"

    # Directory for the append-only JSON-lines audit log (None = console only)
    SPECTRE_AUDIT_DIR: str | None = "logs"


class RuntimeSettings(BaseSettings):
    # ============================================
    # Run Configuration
    # ============================================
    SPECTRE_CONFIG_PATH: str = "profiles.toml"

    # ============================================
    # Browser Escalation
    # ============================================
    # Overrides [browser].executable_path when set
    SPECTRE_BROWSER_PATH: str | None = None

    # Headless=False is more stealthy but needs a display (XVFB in Docker)
    SPECTRE_HEADLESS: bool | None = None


class Settings(LoggingSettings, RuntimeSettings):
    model_config = SettingsConfigDict(
        env_file=os.path.join(os.getcwd(), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
