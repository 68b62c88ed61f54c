from marshmallow import ValidationError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 20
USER_NAME_MIN_LENGTH = 5
USER_NAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 50
CODE_LENGTH = 6


def norm_email(value):
    return value.strip().lower() if isinstance(value, str) else value


def strip_or_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def validate_password(value: str) -> None:
    if value is None or value == "":
        raise ValidationError("The Password is required.")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"The Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValidationError(f"The Password cannot be more than {PASSWORD_MAX_LENGTH} characters.")


def validate_user_name(value: str) -> None:
    if not value or not value.strip():
        raise ValidationError("The UserName is required.")
    if len(value.strip()) < USER_NAME_MIN_LENGTH:
        raise ValidationError(f"The UserName must be at least {USER_NAME_MIN_LENGTH} characters.")
    if len(value.strip()) > USER_NAME_MAX_LENGTH:
        raise ValidationError(f"The UserName can't be more than {USER_NAME_MAX_LENGTH} characters long.")


def validate_email_length(value: str) -> None:
    if value and len(value) > EMAIL_MAX_LENGTH:
        raise ValidationError(f"The Email can't be more than {EMAIL_MAX_LENGTH} characters long.")


def validate_code(value: str) -> None:
    if not value or not value.strip():
        raise ValidationError("The Code is required.")
    if len(value) != CODE_LENGTH:
        raise ValidationError(f"The Code must be exactly {CODE_LENGTH} characters long.")
    if not value.isascii() or not value.isdigit():
        raise ValidationError("The Code must contain only digits.")
