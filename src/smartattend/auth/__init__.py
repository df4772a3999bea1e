"""
Authentication Module
=====================
Multi-method login (face, voice, passwordless, MFA) and TOTP primitives.
"""

from .authenticator import Authenticator, AuthResult
from .requests import LoginRequest, InvalidLoginRequest, parse_login_request, SUPPORTED_METHODS
from . import totp

__all__ = [
    'Authenticator',
    'AuthResult',
    'LoginRequest',
    'InvalidLoginRequest',
    'parse_login_request',
    'SUPPORTED_METHODS',
    'totp'
]
