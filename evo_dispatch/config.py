from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Connection settings for the Evolution API, read from EVOLUTION_* variables"""

    model_config = SettingsConfigDict(
        env_prefix="EVOLUTION_",
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = Field(default="http://localhost:8080", min_length=1)
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    verify_ssl: bool = True
    debug: bool = False
    user_agent: str = "evo-dispatch/0.1.0"
