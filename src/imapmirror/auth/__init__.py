from imapmirror.auth.base import AuthContext, CredentialSource, Credentials
from imapmirror.auth.netrc_source import NetrcCredentials
from imapmirror.auth.password import PasswordAuth, StaticCredentials

__all__ = [
    "AuthContext",
    "CredentialSource",
    "Credentials",
    "NetrcCredentials",
    "PasswordAuth",
    "StaticCredentials",
]
