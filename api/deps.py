"""
Accessors for the per-application services.

create_app() builds one TokenIssuer (with its RefreshTokenStore) and one
AccountRecoveryService sharing that store, and registers both in
app.extensions; request handlers reach them through the getters below.
"""
from __future__ import annotations

from flask import current_app

from services.account_recovery import AccountRecoveryService
from services.token_issuer import TokenIssuer

TOKEN_ISSUER_KEY = "token_issuer"
ACCOUNT_RECOVERY_KEY = "account_recovery"


def get_token_issuer() -> TokenIssuer:
    return current_app.extensions[TOKEN_ISSUER_KEY]


def get_account_recovery() -> AccountRecoveryService:
    return current_app.extensions[ACCOUNT_RECOVERY_KEY]
