import os
from datetime import datetime
from typing import Literal, Mapping, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, model_validator

from activity_digest.domain.cutoff import MAX_SINCE_HOURS, MIN_SINCE_HOURS


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


class DigestSettings(BaseModel):
    """
    Resolved configuration for one run.
    Built from the environment (after load_dotenv) and then overridden by command-line flags.
    """
    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1, description="GitHub user or organisation to monitor")
    github_token: Optional[str] = Field(default=None, description="Default token; unauthenticated when absent")
    repo_names: Tuple[str, ...] = Field(default=(), description="Restrict the run to these repositories")
    include_forks: bool = False
    include_archived: bool = False

    psgallery_author: Optional[str] = None
    package_names: Tuple[str, ...] = ()

    state_path: Optional[str] = Field(default=None, description="Defaults to state/<owner>.json")
    save_state: bool = True
    since_hours: int = Field(default=24, ge=MIN_SINCE_HOURS, le=MAX_SINCE_HOURS)
    cutoff: Optional[datetime] = None
    use_last_check: bool = Field(default=False, description="Use the previous run time as cutoff when known")
    concurrency: int = Field(default=1, ge=1, le=16)

    output: Literal["console", "html", "email"] = "console"
    html_path: str = "activity-digest.html"
    smtp_host: Optional[str] = None
    smtp_port: int = 465
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None

    database_url: Optional[str] = None

    @model_validator(mode="after")
    def _check_email_settings(self) -> "DigestSettings":
        if self.output == "email" and not (self.smtp_host and self.email_to):
            raise ValueError("Email output requires SMTP_HOST and DIGEST_EMAIL_TO.")
        return self

    @property
    def resolved_state_path(self) -> str:
        return self.state_path or os.path.join("state", f"{self.owner}.json")

    @property
    def monitors_packages(self) -> bool:
        return bool(self.psgallery_author or self.package_names)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "DigestSettings":
        """
        Reads settings from environment variables. Keyword overrides that are not None win.
        """
        env = os.environ if environ is None else environ

        values = {
            "owner": env.get("GITHUB_OWNER", ""),
            "github_token": env.get("GITHUB_TOKEN") or None,
            "repo_names": _split_list(env.get("GITHUB_REPOS")),
            "psgallery_author": env.get("PSGALLERY_AUTHOR") or None,
            "package_names": _split_list(env.get("PSGALLERY_PACKAGES")),
            "state_path": env.get("STATE_PATH") or None,
            "since_hours": env.get("SINCE_HOURS") or 24,
            "concurrency": env.get("REPO_CONCURRENCY") or 1,
            "output": env.get("DIGEST_OUTPUT") or "console",
            "html_path": env.get("HTML_PATH") or "activity-digest.html",
            "smtp_host": env.get("SMTP_HOST") or None,
            "smtp_port": env.get("SMTP_PORT") or 465,
            "smtp_username": env.get("SMTP_USERNAME") or None,
            "smtp_password": env.get("SMTP_PASSWORD") or None,
            "email_from": env.get("DIGEST_EMAIL_FROM") or None,
            "email_to": env.get("DIGEST_EMAIL_TO") or None,
            "database_url": env.get("DATABASE_URL") or None,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)
