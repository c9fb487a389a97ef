"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration – values are read from `.env` or the environment."""

    app_title: str = "Campaign Rules Index"

    # Paths
    base_dir: Path = Path(__file__).resolve().parent.parent
    data_dir: Path = base_dir / "data" / "rulebooks"
    sqlite_path: Path = base_dir / "storage" / "sqlite" / "rules.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
