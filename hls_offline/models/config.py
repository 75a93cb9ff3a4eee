"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_MASTER_MANIFEST_NAME = "master.m3u8"
DEFAULT_LOCAL_SERVER_URL = "http://localhost:8080/"


class DownloadConfig(BaseModel):
    """A validated configuration model for the application."""

    # Storage
    download_dir: str
    master_manifest_name: str = DEFAULT_MASTER_MANIFEST_NAME

    # Pipeline behaviour
    max_workers: int = 8
    cascade_cancel: bool = True

    # Address of the local file server that exposes download_dir to a player
    local_server_url: str = DEFAULT_LOCAL_SERVER_URL

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("download_dir")
    @classmethod
    def validate_download_dir(cls, v: str) -> str:
        if not v:
            raise ValueError("Download directory cannot be empty.")
        return str(Path(v).expanduser())

    @field_validator("master_manifest_name")
    @classmethod
    def validate_master_manifest_name(cls, v: str) -> str:
        """The master manifest is stored directly under the program directory."""
        if not v.endswith(".m3u8"):
            raise ValueError("Master manifest name must end with '.m3u8'.")
        if "/" in v or "\\" in v or v.startswith("."):
            raise ValueError("Master manifest name must be a plain file name.")
        return v

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of workers."""
        if v < 1 or v > 32:
            raise ValueError("Max workers must be between 1 and 32.")
        return v

    @field_validator("local_server_url")
    @classmethod
    def validate_local_server_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Local server URL must start with http:// or https://.")
        return v if v.endswith("/") else v + "/"

    @property
    def base_dir(self) -> Path:
        return Path(self.download_dir)

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
