import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    database_url: str = "sqlite+aiosqlite:///./bazaar.db"
    jwt_secret: str = "devsecret"
    admin_username: str = "admin"
    admin_password: str = "admin123"
    upload_dir: str = "uploads"
    max_upload_bytes: int = 5 * 1024 * 1024
    max_upload_files: int = 5
    db_connect_retries: int = 2
    db_retry_delay: float = 2.0
    log_level: str = "INFO"
    bcrypt_rounds: int = 12

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            admin_username=os.getenv("ADMIN_USERNAME", cls.admin_username),
            admin_password=os.getenv("ADMIN_PASSWORD", cls.admin_password),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", cls.max_upload_bytes)),
            max_upload_files=int(os.getenv("MAX_UPLOAD_FILES", cls.max_upload_files)),
            db_connect_retries=int(os.getenv("DB_CONNECT_RETRIES", cls.db_connect_retries)),
            db_retry_delay=float(os.getenv("DB_RETRY_DELAY", cls.db_retry_delay)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", cls.bcrypt_rounds)),
        )
