"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class QueueConfig(BaseModel):
    """Queue store and retry policy settings."""

    db_path: str = Field(default="queue.db", description="Path to the SQLite queue database")
    max_attempts: int = Field(
        default=3, ge=1, description="Default execution attempts before a job fails"
    )
    backoff_base_ms: int = Field(
        default=2000, ge=0, description="Base delay for exponential retry backoff (ms)"
    )
    lock_retries: int = Field(
        default=3, ge=1, description="Attempts on SQLite lock contention before giving up"
    )


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    concurrency: int = Field(default=2, ge=1, description="Number of worker threads")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Sleep between claim attempts on an empty queue"
    )
    lease_timeout_s: float = Field(
        default=120.0, gt=0.0, description="Claim lease; expired claims are reaped to waiting"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="How often a running job renews its lease"
    )
    reaper_interval_s: float = Field(
        default=30.0, gt=0.0, description="How often expired leases are reaped"
    )


class DispatchConfig(BaseModel):
    """Converter invocation settings."""

    job_timeout_s: float = Field(
        default=60.0, gt=0.0, description="Maximum converter runtime per attempt (JOB_TIMEOUT)"
    )
    soffice_path: str = Field(default="soffice", description="LibreOffice executable")
    tesseract_path: str = Field(default="tesseract", description="Tesseract OCR executable")


class StorageConfig(BaseModel):
    """Input and result file locations."""

    uploads_dir: str = Field(default="uploads", description="Where uploaded inputs are stored")
    results_dir: str = Field(default="results", description="Where conversion outputs are stored")
    delete_inputs: bool = Field(
        default=True, description="Delete input files once their job is finished"
    )


class ApiConfig(BaseModel):
    """HTTP boundary settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, gt=0, le=65535)
    default_page_size: int = Field(default=20, gt=0)
    max_page_size: int = Field(default=100, gt=0)
    start_workers: bool = Field(
        default=True, description="Run the worker pool inside the API process"
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s [%(name)s] %(message)s")


class DocConvertConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "DocConvertConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "DocConvertConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("max_attempts") is not None:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("workers") is not None:
            config_dict["workers"]["concurrency"] = cli_args["workers"]
        if cli_args.get("timeout") is not None:
            config_dict["dispatch"]["job_timeout_s"] = cli_args["timeout"]
        if cli_args.get("host") is not None:
            config_dict["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["api"]["port"] = cli_args["port"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return DocConvertConfig.from_dict(config_dict)

    def page_size(self, requested: Optional[int]) -> int:
        """Clamp a requested page size to the configured bounds."""
        if requested is None or requested <= 0:
            return self.api.default_page_size
        return min(requested, self.api.max_page_size)
