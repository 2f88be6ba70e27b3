from pydantic_settings import BaseSettings
from pydantic import Field, model_validator
from typing import Optional


class Settings(BaseSettings):
    app_name: str = "DataRoom Security API"
    sqlite_url: str = Field(default="sqlite:///./dataroom.db", alias="SQLITE_URL")
    storage_dir: str = Field(default="./storage", alias="STORAGE_DIR")
    session_secret: str = Field(default="dev-change-me", alias="SESSION_SECRET")
    pointer_secret: str = Field(default="dev-pointer-change-me", alias="POINTER_SECRET")
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    sqlite_lock_timeout: float = Field(default=30.0, alias="SQLITE_LOCK_TIMEOUT")

    api_base_url: str = Field(default="http://localhost:8000", alias="API_BASE_URL")
    web_base_url: str = Field(default="http://localhost:3000", alias="WEB_BASE_URL")
    allow_email_param: bool = Field(default=True, alias="ALLOW_EMAIL_PARAM")
    https_only_cookies: bool = Field(default=True, alias="HTTPS_ONLY_COOKIES")

    # Lifetimes (seconds) of signed content pointers and grants
    content_pointer_ttl: int = Field(default=3600, alias="CONTENT_POINTER_TTL")
    watermark_pointer_ttl: int = Field(default=300, alias="WATERMARK_POINTER_TTL")
    watermark_artifact_retention: int = Field(
        default=600, alias="WATERMARK_ARTIFACT_RETENTION"
    )
    folder_grant_ttl: int = Field(default=900, alias="FOLDER_GRANT_TTL")
    render_timeout_seconds: float = Field(default=20.0, alias="RENDER_TIMEOUT_SECONDS")

    country_header: str = Field(default="CF-IPCountry", alias="COUNTRY_HEADER")
    notify_webhook_url: Optional[str] = Field(default=None, alias="NOTIFY_WEBHOOK_URL")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @model_validator(mode="after")
    def _check_pointer_lifetimes(self) -> "Settings":
        if self.watermark_pointer_ttl >= self.content_pointer_ttl:
            raise ValueError(
                "WATERMARK_POINTER_TTL must be shorter than CONTENT_POINTER_TTL"
            )
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True


settings = Settings()  # type: ignore[call-arg]
