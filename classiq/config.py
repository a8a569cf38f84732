import logging
import os

from pydantic import BaseModel


def _env(name: str, default: str) -> str:
    return os.getenv(f"CLASSIQ_{name}", default)


class Settings(BaseModel):
    database_url: str = _env("DATABASE_URL", "sqlite:///data/classiq.db")
    data_dir: str = _env("DATA_DIR", "data")
    log_path: str = _env("LOG_PATH", "data/classiq.log")
    log_level: str = _env("LOG_LEVEL", "INFO")

    jwt_secret: str = _env("JWT_SECRET", "change-me")
    jwt_algorithm: str = "HS256"

    institution_timezone: str = _env("TIMEZONE", "Asia/Kolkata")

    match_threshold: float = float(_env("MATCH_THRESHOLD", "0.6"))  # similarity, higher is closer
    descriptor_dim: int = 128
    min_face_captures: int = 3
    max_face_captures: int = 10

    qr_default_expiry_seconds: int = int(_env("QR_EXPIRY_SECONDS", "60"))
    qr_token_bytes: int = 32

    allowed_networks: str = _env("ALLOWED_NETWORKS", "")
    trust_forwarded_for: bool = _env("TRUST_FORWARDED_FOR", "false").lower() in ("1", "true", "yes")


settings = Settings()


def configure_logging(cfg: Settings = settings) -> None:
    root = logging.getLogger("classiq")
    if root.handlers:
        return
    root.setLevel(cfg.log_level.upper())
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    stream = logging.StreamHandler()
    stream.setFormatter(fmt)
    root.addHandler(stream)

    if cfg.log_path:
        log_dir = os.path.dirname(cfg.log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path)
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)
