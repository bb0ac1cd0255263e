import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.getenv("LIBRARY_DATA_FILE")
        or "library.db"
    )

    # Backup settings
    backup_version: str = os.getenv("BACKUP_VERSION", "1.0")

    # Circulation settings
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "7"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "School Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")


settings = Settings()
