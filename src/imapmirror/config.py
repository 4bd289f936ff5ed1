from __future__ import annotations

from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imapmirror.errors import ConfigError

Transport = Literal["plain", "ssl", "starttls"]

DEFAULT_PORTS = {"plain": 143, "starttls": 143, "ssl": 993}


class ServerConfig(BaseModel):
    """
    One logical IMAP server.

    `name` is the registry key: at most one live session exists per name.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Logical server identity")
    address: Optional[str] = Field(None, description="Host to connect to (defaults to name)")
    port: Optional[int] = Field(None, ge=1, le=65535)
    transport: Transport = "ssl"
    user: Optional[str] = Field(None, description="Login name handed to the credential lookup")

    line_ending: Literal["crlf", "lf"] = "crlf"
    inbox: str = "INBOX"
    split_download_body: bool = False
    allow_unscoped_expunge: Literal["never", "always"] = "never"

    # Search only a trailing window of the buffer while waiting for a tag.
    streaming: bool = False

    command_timeout: float = Field(120.0, gt=0)
    connect_timeout: float = Field(30.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("address") is None and data.get("name"):
            data["address"] = data["name"]
        if data.get("port") is None:
            data["port"] = DEFAULT_PORTS.get(data.get("transport", "ssl"), 993)
        return data

    @property
    def terminator(self) -> bytes:
        return b"\r\n" if self.line_ending == "crlf" else b"\n"

    def candidate_ports(self) -> list[str]:
        """Ports under which credentials for this server may be filed."""
        ports = [str(self.port)]
        if self.port == 993 or self.transport == "ssl":
            ports.extend(["imaps", "993"])
        else:
            ports.extend(["imap", "143"])
        seen = set()
        out: list[str] = []
        for p in ports:
            if p not in seen:
                seen.add(p)
                out.append(p)
        return out

    def with_transport(self, transport: Transport) -> "ServerConfig":
        data = self.model_dump()
        data["transport"] = transport
        return ServerConfig(**data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerConfig":
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid server configuration: {e}") from e


class ClientSettings(BaseSettings):
    """Process-wide knobs, read from IMAPMIRROR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAPMIRROR_",
        case_sensitive=False,
        extra="ignore",
    )

    keepalive_interval: float = Field(900.0, gt=0, description="Seconds between keepalive sweeps")
    keepalive_idle: float = Field(300.0, ge=0, description="Idle seconds before a NOOP is sent")
    streaming_window: int = Field(500, gt=0, description="Trailing bytes searched in streaming mode")
    record_commands: bool = Field(False, description="Log every command line at DEBUG")
    ssl_verify: bool = True


def load_settings(env_file: Optional[str] = ".env", **overrides: Any) -> ClientSettings:
    """Settings from the environment, after loading `env_file` (existing variables win)."""
    if env_file:
        load_dotenv(env_file, override=False)
    try:
        return ClientSettings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid client settings: {e}") from e
