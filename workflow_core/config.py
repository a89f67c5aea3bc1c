"""Configuration management for the workflow orchestration core."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Workflow Core", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Storage settings; an empty URL keeps documents and history in memory
    database_url: str = Field(default="", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(
        default=10,
        description="Maximum number of simultaneously running executions"
    )
    worker_threads: int = Field(
        default=16,
        description="Minimum size of the execution worker pool"
    )
    default_max_retries: int = Field(default=3, description="Fallback node retry count")
    default_retry_delay_ms: int = Field(default=1000, description="Fallback linear backoff step")
    default_max_iterations: int = Field(
        default=1000,
        description="Loop iteration ceiling when a loop node does not set one"
    )
    default_parallel_concurrency: int = Field(
        default=3,
        description="Worker count for parallel nodes that do not set one"
    )
    enforce_validation: bool = Field(
        default=False,
        description="Reject workflows with validation errors before execution"
    )
    allow_script_conditions: bool = Field(
        default=False,
        description="Evaluate script conditions with the restricted expression evaluator"
    )
    http_timeout: float = Field(default=30.0, description="Timeout in seconds for api nodes")
    history_limit: int = Field(default=1000, description="Maximum in-memory history records")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log records")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # CORS settings
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            return v

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'worker_threads', 'default_max_iterations',
                     'default_parallel_concurrency')
    @classmethod
    def validate_positive(cls, v):
        """Validate counts that must be at least one."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('default_max_retries', 'default_retry_delay_ms')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @property
    def uses_database(self) -> bool:
        """Check whether persistent storage is configured."""
        return bool(self.database_url)

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"WORKFLOW_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Core"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", ""),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_executions=get_env("MAX_CONCURRENT_EXECUTIONS", 10, int),
            worker_threads=get_env("WORKER_THREADS", 16, int),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 3, int),
            default_retry_delay_ms=get_env("DEFAULT_RETRY_DELAY_MS", 1000, int),
            default_max_iterations=get_env("DEFAULT_MAX_ITERATIONS", 1000, int),
            default_parallel_concurrency=get_env("DEFAULT_PARALLEL_CONCURRENCY", 3, int),
            enforce_validation=get_env("ENFORCE_VALIDATION", False, bool),
            allow_script_conditions=get_env("ALLOW_SCRIPT_CONDITIONS", False, bool),
            http_timeout=get_env("HTTP_TIMEOUT", 30.0, float),
            history_limit=get_env("HISTORY_LIMIT", 1000, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and the environment."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the filesystem."""
    errors = []

    if config.is_sqlite and config.uses_database:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:" and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        worker_threads=8,
        default_retry_delay_ms=0,
        default_max_iterations=100,
        enforce_validation=False,
        allow_script_conditions=True,
        cors_origins=[]
    )
