"""
Token services: issuance, rotation and revocation on top of models.token_store.
"""
