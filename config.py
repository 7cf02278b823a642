import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


def _parse_tokens(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [token.strip() for token in raw.split(",") if token.strip()]


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "localhost")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./ab_testing.db")
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_filename = os.getenv("LOG_FILENAME", default="ab_testing_service.log")
        self.valid_tokens = _parse_tokens(os.getenv("VALID_TOKENS"))
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1")
        # run tasks inline, used by the test suite and single-process setups
        self.celery_task_always_eager = os.getenv("CELERY_TASK_ALWAYS_EAGER", "false").lower() in ("1", "true", "yes")

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_filename)

    def __repr__(self):
        return (
            f"<Settings host={self.valkey_host} port={self.valkey_port} loglevel={self.log_level}, "
            f"broker_url:{self.celery_broker_url}, backend_url:{self.celery_backend_url}, "
            f"eager:{self.celery_task_always_eager}>"
        )

config = Config()
