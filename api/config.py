"""
Environment-aware configuration.
Every value can be overridden through the environment (or a .env file).
Token settings are turned into an explicit JwtSettings value by the app
factory; nothing else reads the JWT_* keys.
"""
import os
from dotenv import load_dotenv

load_dotenv()  # Read .env if present


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")  # Set a strong key in production
    DEBUG = False
    TESTING = False
    # CORS: in dev we usually allow '*', in prod supply a comma-separated list in env
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    # Keep a copy of env for visibility
    APP_ENV = os.getenv("APP_ENV", "dev")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///cleanhr-auth.db")

    # access tokens (HS256)
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me-to-32-bytes-or-more")
    JWT_ISSUER = os.getenv("JWT_ISSUER", "cleanhr-auth-api")
    JWT_KEY_ID = os.getenv("JWT_KEY_ID", "MyAppSharedSecretKey")
    JWT_TOKEN_LIFETIME_SECONDS = int(os.getenv("JWT_TOKEN_LIFETIME_SECONDS", "86400"))
    JWT_CLOCK_SKEW_SECONDS = int(os.getenv("JWT_CLOCK_SKEW_SECONDS", "30"))
    # one login chain per user unless enabled
    JWT_MULTI_DEVICE_SESSIONS = _flag("JWT_MULTI_DEVICE_SESSIONS", "false")

    # refresh tokens
    REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "30"))
    REFRESH_TOKEN_REUSE_REVOKES_FAMILY = _flag("REFRESH_TOKEN_REUSE_REVOKES_FAMILY", "true")

    # emailed account codes
    PASSWORD_RESET_CODE_LIFETIME_MINUTES = int(os.getenv("PASSWORD_RESET_CODE_LIFETIME_MINUTES", "5"))
    EMAIL_VERIFICATION_CODE_LIFETIME_MINUTES = int(os.getenv("EMAIL_VERIFICATION_CODE_LIFETIME_MINUTES", "5"))
    PASSWORD_HISTORY_SIZE = int(os.getenv("PASSWORD_HISTORY_SIZE", "5"))

    ALLOWED_ROLES = os.getenv("ALLOWED_ROLES", "admin,manager,user").split(",")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    # In dev, propagate exceptions so our error handler has full context
    PROPAGATE_EXCEPTIONS = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")


class TestingConfig(BaseConfig):
    TESTING = True
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///cleanhr-auth-test.db")
    JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
    LOG_LEVEL = "WARNING"


class ProductionConfig(BaseConfig):
    DEBUG = False


def get_config(name: str | None):
    """
    Select config class.
    - If name is provided, choose by name.
    - Else choose based on APP_ENV (dev/test/prod).
    """
    if name:
        name = name.lower()
    env = (name or os.getenv("APP_ENV", "dev")).lower()
    if env in ["prod", "production"]:
        return ProductionConfig
    if env in ["test", "testing"]:
        return TestingConfig
    return DevelopmentConfig
