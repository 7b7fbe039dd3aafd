from pathlib import Path
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{BASE_DIR / 'coachvault.db'}"
    environment: str = "development"
    backup_dir: Path = BASE_DIR / "backups"
    backup_retention: int = 30
    backup_batch_size: int = 500
    incremental_window_hours: int = 24
    log_dir: Path = BASE_DIR / "data" / "logs"
    log_level: str = "INFO"

    model_config = {"env_file": [BASE_DIR / ".env", BASE_DIR.parent / ".env"], "extra": "ignore"}


settings = Settings()
