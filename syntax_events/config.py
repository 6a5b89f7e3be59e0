import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "ACCESS_TOKEN_SECRET",
    "CLOUDINARY_CLOUD_NAME",
    "CLOUDINARY_API_KEY",
    "CLOUDINARY_API_SECRET",
)

_LOCAL_DB_PATH = os.path.join(os.path.dirname(__file__), "local_dev.db")


def _normalise_database_url(url: str) -> str:
    if not url:
        # Local development fallback: SQLite, no PostgreSQL install required
        return f"sqlite:///{_LOCAL_DB_PATH}"
    # Render/Heroku provide postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _split_origins(raw: str) -> List[str]:
    if raw.strip() == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass
class Settings:
    """Runtime configuration, read once from the environment (and .env)."""

    database_url: str = ""
    access_token_secret: str = ""
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    redis_url: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000
    app_env: str = "development"

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""

    side_effect_timeout: float = 10.0
    media_max_bytes: int = 25 * 1024 * 1024

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=_normalise_database_url(env.get("DATABASE_URL", "")),
            access_token_secret=env.get("ACCESS_TOKEN_SECRET", ""),
            cloudinary_cloud_name=env.get("CLOUDINARY_CLOUD_NAME", ""),
            cloudinary_api_key=env.get("CLOUDINARY_API_KEY", ""),
            cloudinary_api_secret=env.get("CLOUDINARY_API_SECRET", ""),
            redis_url=env.get("REDIS_URL") or None,
            cors_origins=_split_origins(env.get("CORS_ORIGINS", "*")),
            port=int(env.get("PORT", "8000")),
            app_env=env.get("APP_ENV", "development"),
            smtp_host=env.get("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(env.get("SMTP_PORT", "587")),
            smtp_user=env.get("SMTP_USER", ""),
            smtp_pass=env.get("SMTP_PASS", ""),
            smtp_from=env.get("SMTP_FROM", ""),
            side_effect_timeout=float(env.get("SIDE_EFFECT_TIMEOUT", "10")),
            media_max_bytes=int(env.get("MEDIA_MAX_BYTES", str(25 * 1024 * 1024))),
        )

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_user and self.smtp_pass)

    @property
    def sender(self) -> str:
        return self.smtp_from or self.smtp_user

    def missing_required(self, environ=None) -> List[str]:
        """Names of required environment variables that are unset."""
        env = os.environ if environ is None else environ
        return [key for key in REQUIRED_ENV_VARS if not env.get(key)]
