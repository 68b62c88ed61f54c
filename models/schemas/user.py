from marshmallow import Schema, fields, pre_load, validates, validates_schema, ValidationError

from models.schemas.common import (
    norm_email,
    strip_or_none,
    validate_code,
    validate_email_length,
    validate_password,
    validate_user_name,
)


class RegistrationSchema(Schema):
    email = fields.Email(required=True, validate=validate_email_length)
    user_name = fields.String(allow_none=True, load_default=None)
    password = fields.String(required=True, load_only=True)
    confirm_password = fields.String(required=True, load_only=True)

    @pre_load
    def normalize(self, data, **kwargs):
        if isinstance(data, dict):
            data = dict(data)
            if "email" in data:
                data["email"] = norm_email(data["email"])
            if "user_name" in data:
                data["user_name"] = strip_or_none(data["user_name"])
        return data

    @validates("password")
    def check_password(self, value, **kwargs):
        validate_password(value)

    @validates("user_name")
    def check_user_name(self, value, **kwargs):
        if value is not None:
            validate_user_name(value)

    @validates_schema
    def passwords_match(self, data, **kwargs):
        if data.get("password") != data.get("confirm_password"):
            raise ValidationError(
                "The password and confirmation password do not match.", field_name="confirm_password"
            )


class LoginSchema(Schema):
    email_or_user_name = fields.String(required=True)
    password = fields.String(required=True, load_only=True)

    @pre_load
    def normalize(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get("email_or_user_name"), str):
            data = dict(data)
            data["email_or_user_name"] = data["email_or_user_name"].strip()
        return data

    @validates("email_or_user_name")
    def not_blank(self, value, **kwargs):
        if not value:
            raise ValidationError("The EmailOrUserName is required.")


class TokenRefreshSchema(Schema):
    access_token = fields.String(required=True)
    refresh_token = fields.String(required=True)

    @validates("access_token")
    def access_not_blank(self, value, **kwargs):
        if not value or not value.strip():
            raise ValidationError("Access token is required.")

    @validates("refresh_token")
    def refresh_not_blank(self, value, **kwargs):
        if not value or not value.strip():
            raise ValidationError("Refresh token is required.")


class LogoutSchema(Schema):
    refresh_token = fields.String(required=True)

    @validates("refresh_token")
    def not_blank(self, value, **kwargs):
        if not value or not value.strip():
            raise ValidationError("Refresh token is required.")


class RolesSchema(Schema):
    roles = fields.List(fields.String(), required=True)

    @validates("roles")
    def not_empty(self, value, **kwargs):
        if not value:
            raise ValidationError("roles must be a non-empty list")


class UserOutSchema(Schema):
    id = fields.String(allow_none=False)
    email = fields.String(allow_none=True)
    user_name = fields.String(allow_none=True)
    roles = fields.List(fields.String(allow_none=True))
    is_disabled = fields.Boolean()
    email_confirmed = fields.Boolean()
    last_logged_in_at = fields.DateTime(allow_none=True)
    created_at = fields.DateTime()


class EmailSchema(Schema):
    email = fields.Email(required=True, validate=validate_email_length)

    @pre_load
    def normalize(self, data, **kwargs):
        if isinstance(data, dict) and "email" in data:
            data = dict(data)
            data["email"] = norm_email(data["email"])
        return data


class VerifyEmailSchema(EmailSchema):
    code = fields.String(required=True)

    @validates("code")
    def check_code(self, value, **kwargs):
        validate_code(value)


class ResetPasswordSchema(VerifyEmailSchema):
    password = fields.String(required=True, load_only=True)
    confirm_password = fields.String(required=True, load_only=True)

    @validates("password")
    def check_password(self, value, **kwargs):
        validate_password(value)

    @validates_schema
    def passwords_match(self, data, **kwargs):
        if data.get("password") != data.get("confirm_password"):
            raise ValidationError(
                "The password and confirmation password do not match.", field_name="confirm_password"
            )
