"""Environment-aware configuration for the subsidy platform API."""
import os
from datetime import timedelta


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'subsidy.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        if not self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            self.SQLALCHEMY_ENGINE_OPTIONS = {
                "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
                "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
            }
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        # JSON API authenticated by bearer tokens; forms never carry CSRF tokens.
        self.WTF_CSRF_ENABLED = False
        self.JSON_SORT_KEYS = False

        # Auth
        self.JWT_SECRET = os.getenv("JWT_SECRET", self.SECRET_KEY)
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRES = timedelta(hours=int(os.getenv("JWT_EXPIRES_HOURS", 24 * 7)))
        self.MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", 5))
        self.ACCOUNT_LOCK_MINUTES = int(os.getenv("ACCOUNT_LOCK_MINUTES", 120))
        self.EMAIL_VERIFICATION_HOURS = int(os.getenv("EMAIL_VERIFICATION_HOURS", 24))
        self.PASSWORD_RESET_MINUTES = int(os.getenv("PASSWORD_RESET_MINUTES", 10))

        # Blockchain
        self.BLOCKCHAIN_RPC_URL = os.getenv("BLOCKCHAIN_RPC_URL", os.getenv("RPC_URL", "http://127.0.0.1:8545"))
        self.CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
        self.PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")
        self.CHAIN_ID = int(os.getenv("CHAIN_ID", 1337))
        self.GAS_PRICE_WEI = int(os.getenv("GAS_PRICE_WEI", 20_000_000_000))
        self.BLOCKCHAIN_NETWORK = os.getenv("BLOCKCHAIN_NETWORK", "localhost")
        self.BLOCKCHAIN_TX_TIMEOUT = int(os.getenv("BLOCKCHAIN_TX_TIMEOUT", 120))
        self.GAS_LIMITS = {
            "createProject": int(os.getenv("GAS_LIMIT_CREATE_PROJECT", 500_000)),
            "createMilestone": int(os.getenv("GAS_LIMIT_CREATE_MILESTONE", 300_000)),
            "releaseSubsidy": int(os.getenv("GAS_LIMIT_RELEASE_SUBSIDY", 200_000)),
        }

        # Oracle providers
        self.WEATHER_API_URL = os.getenv("WEATHER_API_URL", "https://api.openweathermap.org/data/2.5")
        self.WEATHER_API_KEY = os.getenv("WEATHER_API_KEY", "")
        self.ENERGY_API_URL = os.getenv("ENERGY_API_URL", "")
        self.ENERGY_API_KEY = os.getenv("ENERGY_API_KEY", "")
        self.CERT_API_URL = os.getenv("CERT_API_URL", "")
        self.CERT_API_KEY = os.getenv("CERT_API_KEY", "")
        self.ORACLE_THRESHOLD = float(os.getenv("ORACLE_THRESHOLD", 0.75))
        self.ORACLE_COMPLIANCE_BAR = float(os.getenv("ORACLE_COMPLIANCE_BAR", 0.8))
        self.ORACLE_REQUEST_TIMEOUT = int(os.getenv("ORACLE_REQUEST_TIMEOUT", 10))

        # Request bodies
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 10 * 1024 * 1024))

        # Mail
        self.MAIL_SERVER = os.getenv("MAIL_SERVER", "")
        self.MAIL_PORT = int(os.getenv("MAIL_PORT", 25))
        self.MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
        self.MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
        self.MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", "true")
        self.MAIL_USE_SSL = _env_bool("MAIL_USE_SSL")
        self.MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@greenh2-subsidy.gov.in")
        self.CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

        # Reverse proxies in front of the app; 0 ignores X-Forwarded-For.
        self.TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", 0))

        # CORS
        self.CORS_ALLOWED_ORIGINS = _env_list("CORS_ALLOWED_ORIGINS", "http://localhost:3000")

        # Scheduler
        self.SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")
        # Cron hours are interpreted in this offset from UTC (Asia/Kolkata by default).
        self.SCHEDULER_TIMEZONE_OFFSET_MINUTES = int(os.getenv("SCHEDULER_TIMEZONE_OFFSET_MINUTES", 330))
        self.DUE_REMINDER_DAYS = int(os.getenv("DUE_REMINDER_DAYS", 3))

        # Audit
        self.AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", 2555))

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = "sqlite://"
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
        self.SCHEDULER_ENABLED = False
        self.MAIL_SERVER = ""
        self.CONTRACT_ADDRESS = ""
        self.PRIVATE_KEY = ""
        self.ENERGY_API_URL = "https://energy.test/api"
        self.CERT_API_URL = "https://cert.test/api"
        self.LOG_LEVEL = "WARNING"
