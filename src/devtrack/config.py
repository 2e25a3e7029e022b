"""
Configuration for devtrack.

Settings are read from ``DEVTRACK_*`` environment variables (or a ``.env``
file) and are treated as read-only input by every component.
"""

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UserIdentity(BaseModel):
    """The profile's current user, used to flag user-owned commits."""

    email: str = Field(..., description="Current user's commit email")
    name: str = Field("", description="Display name")
    github_username: Optional[str] = Field(
        None, description="GitHub login, matched against noreply addresses"
    )


class Settings(BaseSettings):
    """devtrack runtime settings."""

    home: Path = Field(
        default=Path("~/.devtrack"), description="Root directory for all profiles"
    )
    profile: str = Field("default", description="Active profile name")

    user_email: str = Field("", description="Current user's commit email")
    user_name: str = Field("", description="Current user's display name")
    github_username: Optional[str] = Field(None, description="Current user's GitHub login")

    lock_timeout: float = Field(
        3.0, description="Seconds to wait for the writable connection lock"
    )
    collaborator_timeout: float = Field(
        120.0, description="Deadline in seconds for one summarize/embed call"
    )
    timezone: str = Field("UTC", description="Timezone used for worklog day boundaries")

    max_file_size: int = Field(500 * 1024, description="Files larger than this are skipped")
    max_content_size: int = Field(
        100 * 1024, description="Files smaller than this have their content read"
    )
    max_files: int = Field(500, description="Maximum files summarized per index pass")
    folder_summary_depth: int = Field(2, description="Deepest folder level summarized")

    log_level: str = Field("INFO", description="Log level")
    log_json: bool = Field(False, description="Render logs as JSON")

    model_config = SettingsConfigDict(
        env_prefix="DEVTRACK_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("home")
    @classmethod
    def expand_home(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @field_validator("lock_timeout", "collaborator_timeout")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"unknown timezone: {v}") from e
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def profiles_dir(self) -> Path:
        return self.home / "profiles"

    def profile_dir(self, name: str) -> Path:
        return self.profiles_dir() / name

    def db_path(self, name: str) -> Path:
        return self.profile_dir(name) / "devtrack.db"

    def identity(self) -> Optional[UserIdentity]:
        """Return the configured current user, or None if no email is set."""
        if not self.user_email:
            return None
        return UserIdentity(
            email=self.user_email,
            name=self.user_name,
            github_username=self.github_username,
        )


def get_settings(**overrides) -> Settings:
    """Build a fresh Settings instance, applying keyword overrides."""
    return Settings(**overrides)
