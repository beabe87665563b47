from datetime import date

from pydantic import Field, field_validator

from campus.schemas.base import CamelModel, validate_email


class RegisterIn(CamelModel):
    name: str = Field(min_length=2, max_length=100)
    username: str = Field(min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_]+$")
    email: str
    school_email: str
    personal_email: str | None = None
    password: str = Field(min_length=6)
    phone: str | None = Field(default=None, min_length=1)
    date_of_birth: date
    university_name: str = Field(min_length=2, max_length=200)

    @field_validator("email", "school_email")
    @classmethod
    def _emails(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("personal_email")
    @classmethod
    def _personal_email(cls, value: str | None) -> str | None:
        return validate_email(value) if value else None


class LoginIn(CamelModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return validate_email(value)


class UpdatePasswordIn(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1)


class ProfileUpdateIn(CamelModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    username: str | None = Field(default=None, min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_]+$")
    email: str | None = None
    personal_email: str | None = None
    phone: str | None = None

    @field_validator("email", "personal_email")
    @classmethod
    def _emails(cls, value: str | None) -> str | None:
        return validate_email(value) if value else None


class ForgotPasswordIn(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return validate_email(value)


class VerifyResetCodeIn(ForgotPasswordIn):
    otp: str = Field(pattern=r"^\d{6}$")


class ResetPasswordIn(VerifyResetCodeIn):
    new_password: str = Field(min_length=1)
