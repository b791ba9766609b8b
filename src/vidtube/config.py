from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///vidtube.db"
    api_title: str = "VidTube API"
    cors_origin: str = "*"

    access_token_secret: str = "access-secret"
    access_token_expire_minutes: int = Field(15, ge=1)
    refresh_token_secret: str = "refresh-secret"
    refresh_token_expire_minutes: int = Field(60 * 24 * 7, ge=1)
    jwt_algorithm: str = "HS256"
    cookie_secure: bool = True

    upload_temp_dir: str = "./public/temp"
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    upload_timeout: float = 30.0

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origin.split(",") if origin.strip()]


settings = Settings()
