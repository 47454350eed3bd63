from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path
from typing import Optional


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = f"sqlite:///{BASE_DIR}/data/db/surveysync.db"
    database_busy_timeout: float = 30.0   # seconds SQLite waits on a locked db

    # Remote feature service
    layer_url: Optional[str] = None       # e.g. https://services.arcgis.com/.../FeatureServer/0
    layer1_url: Optional[str] = None      # Descriptions table override
    layer2_url: Optional[str] = None      # Detected-facts table override
    portal_url: str = "https://www.arcgis.com"
    arcgis_user: Optional[str] = None
    arcgis_password: Optional[str] = None
    token_expiration_minutes: int = 60
    http_timeout_seconds: float = 30.0
    page_size: int = Field(default=1000, ge=1, le=2000)   # service maxRecordCount bound

    # Sync policy
    freshness_minutes: float = 5.0        # cache considered fresh below this age
    job_retention_minutes: int = 24 * 60
    attachment_workers: int = Field(default=4, ge=1)

    # Storage
    photos_dir: Path = BASE_DIR / "data" / "photos"

    # Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    def model_post_init(self, __context):
        self.photos_dir.mkdir(parents=True, exist_ok=True)
        (BASE_DIR / "data" / "db").mkdir(parents=True, exist_ok=True)


settings = Settings()
