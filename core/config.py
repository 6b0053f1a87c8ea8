"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class RelaySettings(BaseModel):
    """Broker side behaviour (RELAY__*)."""

    # Message of the day sent after handshake; empty disables it
    motd: str = ""
    # -1 means unlimited
    max_users: int = -1
    # True: maintain a room -> connections index instead of scanning on demand
    optimize_sending: bool = False
    # Send the caller's address back during handshake
    report_ip: bool = False
    max_frame_bytes: int = 1024 * 1024

    @field_validator("max_users")
    @classmethod
    def _validate_max_users(cls, v: int) -> int:
        if v < -1:
            raise ValueError("max_users must be -1 (unlimited) or >= 0")
        return v


class ClientSettings(BaseModel):
    """Python client defaults (CLIENT__*)."""

    url: str = "ws://127.0.0.1:3000/"
    # Grace window between socket open and the handshake request
    handshake_delay: float = 0.5
    # Upper bound for any request awaiting a statuscode reply
    request_timeout: float = 10.0
    language: str = "Python"


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = "Relay Broker"
    VERSION: str = "0.2.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: Optional[str] = None

    # 监听地址
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # 分组配置：嵌套模型，环境变量形如 RELAY__MOTD
    relay: RelaySettings = Field(default_factory=RelaySettings)
    client: ClientSettings = Field(default_factory=ClientSettings)

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, v):
        if v is None or v == "":
            return None
        return str(v).upper()


settings = Settings()
