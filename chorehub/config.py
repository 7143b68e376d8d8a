import logging
import os
from dataclasses import dataclass


def _default_sqlite_url() -> str:
    data_dir = "/data"
    if os.path.isdir(data_dir):
        return f"sqlite:////{os.path.join(data_dir.lstrip('/'), 'chorehub.db')}"
    return "sqlite:///chorehub.db"


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str
    db_isolation: str
    tx_attempts: int
    invitation_ttl_days: int
    task_offer_ttl_days: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", _default_sqlite_url()),
        session_secret=os.getenv("SESSION_SECRET", "dev-secret"),
        db_isolation=os.getenv("CHOREHUB_DB_ISOLATION", "SERIALIZABLE"),
        tx_attempts=max(1, int(os.getenv("CHOREHUB_TX_ATTEMPTS", "5"))),
        invitation_ttl_days=int(os.getenv("CHOREHUB_INVITATION_TTL_DAYS", "7")),
        task_offer_ttl_days=int(os.getenv("CHOREHUB_TASK_OFFER_TTL_DAYS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


settings = load_settings()


def configure_logging(level: str = settings.log_level):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
