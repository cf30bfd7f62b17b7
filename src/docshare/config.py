from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///docshare.db"
    upload_dir: str = "uploads"
    max_upload_bytes: int = 10 * 1024 * 1024
    allowed_extensions: List[str] = [
        ".pdf", ".doc", ".docx", ".ppt", ".pptx", ".xlsx", ".xls", ".txt",
    ]
    api_title: str = "Document & Knowledge Sharing"
    session_cookie_name: str = "docshare_session"
    session_cookie_secure: bool = False
    session_ttl_minutes: int = 60 * 24
    bcrypt_rounds: int = 12
    rate_limit_enabled: bool = True
    reconcile_uploads_on_startup: bool = False
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 3000


settings = Settings()
