import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "order_receipts.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    APPLICANT_KEY = os.environ.get("APPLICANT_KEY", "")
    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")

    RECEIPT_PARTICIPANT_NAME = os.environ.get("RECEIPT_PARTICIPANT_NAME", "participant")
    RECEIPT_FILE_PREFIX = os.environ.get("RECEIPT_FILE_PREFIX", "INSPIEN")
    RECEIPT_OUTBOX_DIR = os.environ.get("RECEIPT_OUTBOX_DIR", os.path.join(BASE_DIR, "out", "receipts"))
    RECEIPT_MAX_ATTEMPTS = _int_env("RECEIPT_MAX_ATTEMPTS", 10)
    RECEIPT_RETRY_ENABLED = _bool_env("RECEIPT_RETRY_ENABLED", True)
    RECEIPT_RETRY_INTERVAL_SECONDS = _int_env("RECEIPT_RETRY_INTERVAL_SECONDS", 60)

    SHIPMENT_BATCH_ENABLED = _bool_env("SHIPMENT_BATCH_ENABLED", True)
    SHIPMENT_BATCH_INITIAL_DELAY_SECONDS = _int_env("SHIPMENT_BATCH_INITIAL_DELAY_SECONDS", 30)
    SHIPMENT_BATCH_INTERVAL_SECONDS = _int_env("SHIPMENT_BATCH_INTERVAL_SECONDS", 300)
    SHIPMENT_BATCH_FETCH_LIMIT = _int_env("SHIPMENT_BATCH_FETCH_LIMIT", 200)

    SFTP_MODE = os.environ.get("SFTP_MODE", "mock")
    SFTP_HOST = os.environ.get("SFTP_HOST")
    SFTP_PORT = _int_env("SFTP_PORT", 22)
    SFTP_USER = os.environ.get("SFTP_USER")
    SFTP_PASSWORD = os.environ.get("SFTP_PASSWORD")
    SFTP_REMOTE_DIR = os.environ.get("SFTP_REMOTE_DIR", ".")
    SFTP_STRICT_HOST_KEY_CHECKING = _bool_env("SFTP_STRICT_HOST_KEY_CHECKING", False)
    SFTP_CONNECT_TIMEOUT_SECONDS = _int_env("SFTP_CONNECT_TIMEOUT_SECONDS", 15)
    SFTP_UPLOAD_TIMEOUT_SECONDS = _int_env("SFTP_UPLOAD_TIMEOUT_SECONDS", 60)
    MOCK_SFTP_DIR = os.environ.get("MOCK_SFTP_DIR", os.path.join(BASE_DIR, "out", "sftp_mock"))

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for production.")
        if env == "production" and not str(self.APPLICANT_KEY or "").strip():
            raise RuntimeError("APPLICANT_KEY is not set for production.")
