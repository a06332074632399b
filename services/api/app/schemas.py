from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class LeaderboardEntry(BaseModel):
    user_id: str
    score: int


class LeaderboardResponse(BaseModel):
    window: str
    entries: List[LeaderboardEntry]
    next_cursor: Optional[int] = None
    source: Literal["cache", "durable"]


class WindowCounts(BaseModel):
    commits: int = Field(ge=0)
    prs: int = Field(ge=0)
    issues: int = Field(ge=0)
    total: int = Field(ge=0)


class BackfillRequest(BaseModel):
    user_id: str
    github_login: Optional[str] = None
    gitlab_username: Optional[str] = None
    days: Optional[int] = Field(default=None, ge=1, le=365)
    concurrency: Optional[int] = Field(default=None, ge=1, le=8)

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("user_id must not be empty")
        return normalized

    @field_validator("github_login", "gitlab_username")
    @classmethod
    def _validate_handle(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            raise ValueError("handle must not be empty")
        return normalized

    @model_validator(mode="after")
    def _require_one_handle(self) -> "BackfillRequest":
        if not self.github_login and not self.gitlab_username:
            raise ValueError("At least one of github_login or gitlab_username is required")
        return self


class BackfillResponse(BaseModel):
    status: str
    user_id: str
    providers: List[str]
    provider_used: Literal["github", "gitlab", "none"]
    snapshot_date: str
    wrote: Dict[str, WindowCounts]
