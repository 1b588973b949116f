"""
schemas/auth_schema.py: Marshmallow schemas for authentication endpoints.

Validation responsibility:
  - This file: field types, lengths, formats, regex patterns.
  - services/auth_service.py: DUPLICATE_EMAIL / DUPLICATE_USERNAME checks
    (cross-entity: require a DB lookup, not a schema concern).
  - services/token_issuer.py: refresh token validity.

IMPORTANT: All schemas inherit from marshmallow.Schema directly so they can
be instantiated in unit tests without a Flask app context.
"""

from __future__ import annotations

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates,
    validates_schema,
)


class RegisterSchema(Schema):
    """
    POST /auth/register

    Field rules:
      username : 3–50 chars, alphanumeric + underscore only
      email    : valid email format
      password : min 8 chars, at least one letter and one digit

    Usernames and emails are lower-cased on load; uniqueness is checked in
    auth_service.py because it requires a DB query.
    """

    username = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=3,
                max=50,
                error="Username must be between 3 and 50 characters.",
            ),
            validate.Regexp(
                r"^[a-zA-Z0-9_]+$",
                error="Username may only contain letters, numbers, and underscores.",
            ),
        ],
    )

    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    password = fields.Str(required=True, load_only=True)

    @validates("password")
    def validate_password_strength(self, value: str, **kwargs) -> None:
        if len(value) < 8:
            raise ValidationError("Password must be at least 8 characters long.")
        if not any(c.isalpha() for c in value):
            raise ValidationError("Password must contain at least one letter.")
        if not any(c.isdigit() for c in value):
            raise ValidationError("Password must contain at least one digit.")

    @post_load
    def normalise_identity(self, data: dict, **kwargs) -> dict:
        data["username"] = data["username"].lower()
        data["email"] = data["email"].lower()
        return data


class LoginSchema(Schema):
    """
    POST /auth/login

    Accepts either `username` or `email` plus `password`. A username value
    containing "@" is treated as an email. The loaded dict always carries a
    single lower-cased `identifier` key.

    Credential correctness is checked in auth_service.py
    (INVALID_CREDENTIALS, 401).
    """

    username = fields.Str(load_default=None)
    email = fields.Str(load_default=None)
    password = fields.Str(required=True, load_only=True)

    @validates_schema
    def require_identifier(self, data: dict, **kwargs) -> None:
        if not (data.get("username") or data.get("email")):
            raise ValidationError(
                "Missing data for required field.",
                field_name="username",
            )

    @post_load
    def build_identifier(self, data: dict, **kwargs) -> dict:
        identifier = data.pop("username", None) or data.pop("email", None)
        data.pop("email", None)
        data["identifier"] = identifier.strip().lower()
        return data


class RefreshTokenSchema(Schema):
    """
    POST /auth/refresh and POST /auth/logout

    Expects the raw refresh token string in the request body. Token validity
    (not found, revoked, expired) is checked in token_issuer.py.
    """

    refresh_token = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=512),
    )
