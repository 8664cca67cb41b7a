from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIMS_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    storage_backend: str = "json"
    storage_name: str = "lims-storage"
    data_dir: Path = Path("./data")
    database_url: str = "sqlite:///./lims.db"

    test_catalog_path: Path | None = None
    catalog_fuzzy_threshold: int = 85
    recent_orders_limit: int = 5

    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    allowed_origins: str = "http://localhost:3000"


settings = Settings()
