"""Configuration management for usersearch."""

import os
from pathlib import Path
from typing import Optional, Dict

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DEFAULT_SEARCH_URL = "https://api.github.com/search/users"


class HttpConfig(BaseModel):
    timeout_s: float = 10.0
    user_agent: str = "usersearch"
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator('timeout_s')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_s must be positive")
        return v


class SearchConfig(BaseModel):
    url: str = DEFAULT_SEARCH_URL
    query_param: str = "q"
    results_key: str = "items"

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("search url must be http(s)")
        return v


class AssetsConfig(BaseModel):
    # 0 means no cap on concurrent downloads
    max_concurrent_fetches: int = 0
    verify_images: bool = True

    @field_validator('max_concurrent_fetches')
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_concurrent_fetches must be >= 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class Config(BaseModel):
    """Main configuration for usersearch."""

    http: HttpConfig = Field(default_factory=HttpConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def default_locations() -> list:
        candidates = []
        env_path = os.environ.get("USERSEARCH_CONFIG")
        if env_path:
            candidates.append(Path(env_path))
        candidates.extend([
            Path("usersearch.yaml"),
            Path.home() / ".config" / "usersearch" / "config.yaml",
        ])
        return candidates

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file.

        An explicit path must exist. Without one, the default locations are
        tried in order and built-in defaults are used if none exists.
        """
        if config_path is None:
            for candidate in cls.default_locations():
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.debug("No config file found, using defaults")
                return cls()
        elif not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode='json'), f, default_flow_style=False)
