"""Refresh token request/response schemas"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BindingContextIn(_CamelModel):
    """Caller fingerprint; blank values are rejected by the rotation engine"""
    network_address: str = Field(..., max_length=256)
    client_signature: str = Field(..., max_length=1024)


class RefreshTokenRequest(_CamelModel):
    """Refresh token exchange request"""
    refresh_token: str = Field(..., max_length=4096)
    context: BindingContextIn


class RefreshTokenResponse(_CamelModel):
    """Successor refresh token"""
    refresh_token: str


class RevokeTokenRequest(_CamelModel):
    """Logout request"""
    refresh_token: str = Field(..., max_length=4096)


class RevokeTokenResponse(BaseModel):
    success: bool = True
    revoked: bool
