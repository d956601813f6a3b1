"""
Configuration management for VodPipe
"""

import yaml
from pathlib import Path
from typing import Optional, List, Dict
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8765


def _default_category_folders() -> Dict[str, str]:
    return {
        "daily_classes": "daily-classes",
        "master_classes": "master-classes",
        "psicotrading": "psicotrading",
        "stocks": "stocks",
    }


class StorageConfig(BaseModel):
    bucket: str = "vodpipe-videos"
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None  # e.g. MinIO / LocalStack
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    uploads_prefix: str = "video-content"  # Originals awaiting processing
    category_folders: Dict[str, str] = Field(default_factory=_default_category_folders)
    default_folder: str = "general"
    part_url_ttl_seconds: int = 3600  # Signed part URLs never outlive 1h
    download_url_ttl_seconds: int = 3600  # Playback and source download links, also capped at 1h
    max_file_size_gb: int = 50

    def folder_for(self, category: str) -> str:
        """Storage folder that HLS output for a category is routed to."""
        key = getattr(category, "value", category)
        return self.category_folders.get(key, self.default_folder)


class TranscodingConfig(BaseModel):
    ffmpeg_path: str = "auto"
    ffprobe_path: str = "auto"
    temp_directory: str = "./transcode_temp"
    segment_duration: int = 10
    video_codec: str = "libx264"
    video_preset: str = "medium"
    audio_bitrate: str = "128k"
    thumbnail_position: float = 0.1  # Fraction of duration
    thumbnail_size: str = "1280x720"
    stall_timeout: int = 120  # Seconds before considering FFmpeg stalled
    retry_count: int = 2  # In-engine retries for transient FFmpeg errors
    ffprobe_timeout: int = 30


class JobsConfig(BaseModel):
    max_workers: int = 2
    max_attempts: int = 3  # Total attempts per job, including the first
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    retry_backoff_factor: float = 2.0


class NotificationsConfig(BaseModel):
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0
    reviewer_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "noreply@vodpipe.local"
    smtp_from_name: str = "VodPipe"
    smtp_start_tls: bool = True


class SecurityConfig(BaseModel):
    allowed_origins: List[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    file: Optional[str] = None


class VodPipeConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VODPIPE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcoding: TranscodingConfig = Field(default_factory=TranscodingConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def find_config_file() -> Optional[Path]:
    """Find the configuration file in standard locations."""
    search_paths = [
        Path.cwd() / "vodpipe.yaml",
        Path.cwd() / "vodpipe.yml",
        Path.cwd() / "config" / "vodpipe.yaml",
        Path.home() / ".config" / "vodpipe" / "vodpipe.yaml",
        Path("/etc/vodpipe/vodpipe.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(config_path: Optional[str] = None) -> VodPipeConfig:
    """Load configuration from YAML file or use defaults (env vars still apply)."""
    config_file = Path(config_path) if config_path else find_config_file()

    if config_file and config_file.exists():
        with open(config_file, "r") as f:
            yaml_data = yaml.safe_load(f) or {}
        return VodPipeConfig(**yaml_data)

    return VodPipeConfig()


# Global config instance, only consulted by the entry point and app factory
_config: Optional[VodPipeConfig] = None


def get_config() -> VodPipeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: VodPipeConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
