"""
web/forms.py -- Validation models for the registration and user edit forms.

Route handlers build these from Form() fields; a pydantic ValidationError is
the validation_failed outcome and is rendered back into the form with the
messages from form_errors(). The handler never touches the store until the
model validates.

Passwords are not stripped: leading/trailing spaces are part of the secret.
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserFields(BaseModel):
    """Profile fields shared by every user form."""

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, max_length=255)
    full_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", "full_name", mode="before")
    @classmethod
    def blank_to_none(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
        return v or None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _EMAIL_RE.match(v):
            raise ValueError("Enter a valid email address.")
        return v


class RegisterForm(UserFields):
    """POST /register and POST /users. A password is mandatory."""

    # bcrypt ignores everything past 72 bytes
    password: str = Field(min_length=8, max_length=72)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class UserUpdateForm(UserFields):
    """POST /users/update/{id}. A blank password keeps the current one."""

    password: Optional[str] = Field(default=None, max_length=72)
    confirm_password: Optional[str] = None

    @field_validator("password", "confirm_password", mode="before")
    @classmethod
    def blank_password(cls, v: object) -> object:
        return v or None

    @model_validator(mode="after")
    def check_new_password(self) -> "UserUpdateForm":
        if self.password is None:
            return self
        if len(self.password) < 8:
            raise ValueError("Password must be at least 8 characters.")
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


def form_errors(exc: ValidationError) -> list[str]:
    """Flatten a ValidationError into one human-readable line per problem."""
    messages = []
    for err in exc.errors():
        msg = err["msg"].removeprefix("Value error, ")
        field = ".".join(str(part) for part in err["loc"])
        messages.append(f"{field.replace('_', ' ')}: {msg}" if field else msg)
    return messages
