import os
from dataclasses import dataclass

PRODUCTION_ENVS = ("prod", "production")
DEFAULT_OFFICE_VIEWER_URL = "https://view.officeapps.live.com/op/embed.aspx"


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    # "local" writes under storage_root (./storage when empty); "s3" uses the S3_* values.
    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    office_viewer_url: str
    max_upload_mb: int
    session_hours: int
    file_link_ttl_seconds: int

    @property
    def is_production(self) -> bool:
        return self.env.lower() in PRODUCTION_ENVS


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e
    if value <= 0:
        raise RuntimeError(f"{name} must be positive (got {value}).")
    return value


def _database_url() -> str:
    url = _getenv("DATABASE_URL", "sqlite:///docportal.db")
    # Hosting providers still hand out the legacy scheme SQLAlchemy 2 rejects.
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_database_url(),
        storage_backend=_getenv("STORAGE_BACKEND", "local").lower(),
        storage_root=_getenv("STORAGE_ROOT"),
        s3_endpoint=_getenv("S3_ENDPOINT"),
        s3_region=_getenv("S3_REGION", "us-east-1"),
        s3_bucket=_getenv("S3_BUCKET"),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY"),
        office_viewer_url=_getenv("OFFICE_VIEWER_URL", DEFAULT_OFFICE_VIEWER_URL),
        max_upload_mb=_getenv_int("MAX_UPLOAD_MB", 25),
        session_hours=_getenv_int("SESSION_HOURS", 8),
        file_link_ttl_seconds=_getenv_int("FILE_LINK_TTL_SECONDS", 600),
    )


def load_config() -> dict:
    """Flatten Settings into the keys Flask and the blueprints read from app.config."""
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "OFFICE_VIEWER_URL": s.office_viewer_url,
        "SESSION_HOURS": s.session_hours,
        # Lifetime of the signed file links given to the Office web viewer.
        "FILE_LINK_MAX_AGE": s.file_link_ttl_seconds,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": s.is_production,
        # Werkzeug answers 413 above this; the app turns that into a flash.
        "MAX_CONTENT_LENGTH": s.max_upload_mb * 1024 * 1024,
    }
