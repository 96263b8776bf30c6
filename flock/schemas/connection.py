# flock/schemas/connection.py
"""
SSH connection parameters supplied by the operator
"""

from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Any, Optional
import pydantic

from flock.exceptions import ConfigError


class SSHConnection(BaseModel):
    """
    Connection descriptor for one remote host
    Authenticates with a password, a private key, or the local ssh agent
    """
    host: str = Field(..., min_length=1, description="Address or DNS name", examples=["203.0.113.10"])
    port: int = Field(default=22, ge=1, le=65535)
    user: str = Field(default="root", min_length=1)
    password: Optional[str] = Field(None, description="Password (requires sshpass)")
    private_key: Optional[str] = Field(None, description="PEM/OpenSSH private key contents")

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("host", "user")
    @classmethod
    def no_whitespace(cls, v: str) -> str:
        v = v.strip()
        if not v or any(ch.isspace() for ch in v):
            raise ValueError("must be non-empty and contain no whitespace")
        return v

    @classmethod
    def parse(cls, data: Any) -> "SSHConnection":
        """Validate raw connection parameters, raising ConfigError on bad input"""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid SSH connection parameters: {e}") from e

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def redacted(self) -> dict:
        """Connection parameters safe for logs and API responses"""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": "***" if self.password else None,
            "private_key": "***" if self.private_key else None,
        }

    def __str__(self) -> str:
        return f"{self.destination}:{self.port}"
