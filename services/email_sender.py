"""
Outbound email for account codes.

The app factory takes any object with these two methods; the default only
logs that a message would have been sent (the code itself is never logged).
"""
import logging

logger = logging.getLogger(__name__)


class LoggingEmailSender:
    def send_password_reset_code(self, email: str, code: str) -> None:
        logger.info("Password reset code issued for %s", email)

    def send_email_verification_code(self, email: str, code: str) -> None:
        logger.info("Email verification code issued for %s", email)
