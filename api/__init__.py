import logging

from flask import Flask
from flasgger import Swagger
from flask_cors import CORS

from .config import get_config
from .deps import ACCOUNT_RECOVERY_KEY, TOKEN_ISSUER_KEY
from .errors import register_error_handlers
from models import storage  # DBStorage singleton (scoped_session)
from models.token_store import RefreshTokenStore
from models.user import User
from services.account_recovery import AccountRecoveryService
from services.token_issuer import JwtSettings, TokenIssuer

# Minimal Swagger config: exposes /swagger.json and UI at /apidocs
SWAGGER_TEMPLATE = {
    "swagger": "2.0.0",
    "info": {
        "title": "CleanHR Auth API",
        "version": "1.0.0",
        "description": "Registration, login and token lifecycle (issue, refresh, logout) for the CleanHR services.",
    },
    "basePath": "/",  # blueprints are mounted under /api/v1
    "schemes": ["http"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": "Enter the token with the `Bearer ` prefix, e.g. \"Bearer abcde12345\"."
        }
    }
}

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec_1",
            "route": "/swagger.json",
            "rule_filter": lambda rule: True,   # include all endpoints
            "model_filter": lambda tag: True,   # include all models
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/apidocs/",
}

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def build_token_services(config) -> TokenIssuer:
    """Wire the refresh-token store and the issuer from a config mapping."""
    store = RefreshTokenStore(storage, lifetime_days=config["REFRESH_TOKEN_EXPIRE_DAYS"])
    return TokenIssuer(
        store,
        JwtSettings.from_config(config),
        user_loader=lambda user_id: storage.get(User, user_id),
    )


def build_account_recovery(config, store: RefreshTokenStore, email_sender=None) -> AccountRecoveryService:
    return AccountRecoveryService(
        storage,
        store,
        email_sender=email_sender,
        reset_code_lifetime_minutes=config["PASSWORD_RESET_CODE_LIFETIME_MINUTES"],
        verification_code_lifetime_minutes=config["EMAIL_VERIFICATION_CODE_LIFETIME_MINUTES"],
        password_history_size=config["PASSWORD_HISTORY_SIZE"],
    )


def create_app(config_name: str | None = None, overrides: dict | None = None, email_sender=None) -> Flask:
    """
    Application factory: creates and configures the Flask app.
    `overrides` is applied on top of the selected config class (tests use it
    to point DATABASE_URL at a temporary database). `email_sender` delivers
    account codes; without one they are only logged.
    """
    app = Flask(__name__)

    # Load configuration (reads .env via get_config)
    app.config.from_object(get_config(config_name))
    if overrides:
        app.config.update(overrides)

    configure_logging(app.config["LOG_LEVEL"])

    # Cross-Origin Resource Sharing: enable for dev, configurable for prod
    CORS(app, resources={r"/*": {"origins": app.config.get("CORS_ORIGINS", "*")}})

    # Swagger UI and JSON
    Swagger(app, template=SWAGGER_TEMPLATE, config=SWAGGER_CONFIG)

    # Register global error handlers that return the uniform error envelope
    register_error_handlers(app)

    storage.reload(app.config["DATABASE_URL"])

    issuer = build_token_services(app.config)
    app.extensions[TOKEN_ISSUER_KEY] = issuer
    app.extensions[ACCOUNT_RECOVERY_KEY] = build_account_recovery(app.config, issuer.store, email_sender)

    from .health import bp as health_bp
    from .auth import bp as auth_bp
    from .users import bp as users_bp

    app.register_blueprint(health_bp, url_prefix="/api/v1")
    app.register_blueprint(auth_bp, url_prefix="/api/v1/auth")
    app.register_blueprint(users_bp, url_prefix="/api/v1")

    # Ensure the DB session is removed at the end of each request/app context
    @app.teardown_appcontext
    def remove_session(exception=None):
        # This calls scoped_session.remove(), preventing connection leaks
        storage.close()

    @app.route("/")
    def root():
        return {
            "message": "Welcome to CleanHR Auth API",
            "docs": "/apidocs/",
            "health": "/api/v1/health",
        }, 200

    logging.getLogger(__name__).info("CleanHR Auth API created (env=%s)", app.config.get("APP_ENV"))
    return app
