"""
Login request variants.

POST /auth/login carries a `method` discriminator. Each variant declares
exactly the fields its strategy needs; passwordless splits into initiate and
verify on the presence of `code`.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, ValidationError

SUPPORTED_METHODS = ["face", "voice", "passwordless", "mfa"]


class _LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class FaceLogin(_LoginRequest):
    method: Literal["face"]
    image: str = Field(..., min_length=1)


class VoiceLogin(_LoginRequest):
    method: Literal["voice"]
    audio: str = Field(..., min_length=1)


class PasswordlessInitiate(_LoginRequest):
    method: Literal["passwordless"]
    email: str = Field(..., min_length=1)


class PasswordlessVerify(_LoginRequest):
    method: Literal["passwordless"]
    email: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class MfaLogin(_LoginRequest):
    method: Literal["mfa"]
    user_id: str = Field(..., alias="userId", min_length=1)
    mfa_code: str = Field(..., alias="mfaCode", min_length=1)


def _login_variant(payload: Any) -> Optional[str]:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True)
    if not isinstance(payload, dict):
        return None
    method = payload.get("method")
    if method == "passwordless":
        return "passwordless_verify" if payload.get("code") else "passwordless_initiate"
    if method in SUPPORTED_METHODS:
        return method
    return None


LoginRequest = Annotated[
    Union[
        Annotated[FaceLogin, Tag("face")],
        Annotated[VoiceLogin, Tag("voice")],
        Annotated[PasswordlessInitiate, Tag("passwordless_initiate")],
        Annotated[PasswordlessVerify, Tag("passwordless_verify")],
        Annotated[MfaLogin, Tag("mfa")],
    ],
    Discriminator(_login_variant),
]

_login_adapter = TypeAdapter(LoginRequest)


class InvalidLoginRequest(ValueError):
    """Payload matches no login variant."""

    message = "Invalid authentication method or missing parameters"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(self.message)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.message, "supportedMethods": list(SUPPORTED_METHODS)}


def parse_login_request(payload: Any):
    """Validate a raw JSON body into one login variant."""
    try:
        return _login_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidLoginRequest(str(e)) from e
