"""Pydantic configuration schema for rulefix.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models when loaded.

Usage:
    from rulefix.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    diagnosis: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model for rule diagnosis and repair",
    )


class DiagnosisConfig(BaseModel):
    """Diagnosis session limits."""

    max_rounds: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum reasoning rounds per diagnosis session",
    )
    max_tokens: int = Field(
        default=2048,
        ge=256,
        le=16384,
        description="Maximum output tokens per reasoning round",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout for a single reasoning request (seconds)",
    )


class DatabaseConfig(BaseModel):
    """SQLite persistence configuration."""

    path: str = Field(
        default="data/rulefix.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Structured logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=True,
        description="Emit JSON lines (False for human-readable console output)",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class AppConfig(BaseModel):
    """Root configuration schema for rulefix.

    This model validates the entire config.yaml structure. If validation
    fails, loading raises ConfigValidationError with per-field messages.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    diagnosis: DiagnosisConfig = Field(default_factory=DiagnosisConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
