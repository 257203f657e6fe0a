"""Configuration management for the MCPHub gateway."""

import os
from functools import lru_cache
from pydantic import BaseModel, field_validator
from dotenv import load_dotenv


DEFAULT_SERVER_URL = "https://server.mcphub.ai/api/mcp"


class Settings(BaseModel):
    """Gateway settings loaded from environment variables."""

    # Backend base URL; the SSE and message endpoints hang off it
    server_url: str = DEFAULT_SERVER_URL

    # Upper bound for a single upstream POST (and for opening the stream)
    request_timeout: float = 60.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "text"  # "json" or "text"
    log_module_levels: dict[str, str] = {}  # Module-specific log levels

    @field_validator("server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def sse_url(self) -> str:
        return f"{self.server_url}/sse"

    @property
    def message_url(self) -> str:
        return f"{self.server_url}/message"


@lru_cache
def get_settings() -> Settings:
    """Load settings from environment, cached for the process lifetime."""
    load_dotenv()

    # Parse module-specific log levels from env var (format: "module1:DEBUG,module2:INFO")
    module_levels = {}
    module_levels_str = os.getenv("LOG_MODULE_LEVELS", "")
    if module_levels_str:
        for item in module_levels_str.split(","):
            if ":" in item:
                module, level = item.split(":", 1)
                module_levels[module.strip()] = level.strip()

    return Settings(
        server_url=os.getenv("MCPHUB_SERVER_URL") or DEFAULT_SERVER_URL,
        request_timeout=float(os.getenv("MCPHUB_REQUEST_TIMEOUT", "60")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_module_levels=module_levels,
    )
