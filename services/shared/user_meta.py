"""Per-user display metadata hash (lb:user:{user_id}).

Only the provider handle fields are used here; display fields written by
other services are left untouched.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from services.shared.caching import get_redis


logger = logging.getLogger("user_meta")

GITHUB_LOGIN_FIELD = "githubLogin"
GITLAB_USERNAME_FIELD = "gitlabUsername"


def user_meta_key(user_id) -> str:
    return f"lb:user:{user_id}"


@dataclass(frozen=True)
class UserHandles:
    user_id: str
    github_login: Optional[str] = None
    gitlab_username: Optional[str] = None

    @property
    def has_handle(self) -> bool:
        return bool(self.github_login or self.gitlab_username)


def _trimmed(value) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def read_user_handles(user_ids: Iterable[str], client=None) -> List[UserHandles]:
    """
    Read provider handles for many users in one pipeline

    Missing hashes and blank fields yield None handles

    Args:
        user_ids (list): Internal user ids
        client: Optional Redis client

    Returns:
        list of UserHandles in the order of user_ids
    """
    ids = [str(user_id) for user_id in user_ids]
    if not ids:
        return []

    pipe = (client or get_redis()).pipeline()
    for user_id in ids:
        pipe.hgetall(user_meta_key(user_id))
    raw = pipe.execute()

    out = []
    for user_id, fields in zip(ids, raw):
        fields = fields if isinstance(fields, dict) else {}
        out.append(
            UserHandles(
                user_id=user_id,
                github_login=_trimmed(fields.get(GITHUB_LOGIN_FIELD)),
                gitlab_username=_trimmed(fields.get(GITLAB_USERNAME_FIELD)),
            )
        )
    return out


def write_user_handles(user_id, github_login=None, gitlab_username=None, client=None) -> None:
    """
    Record the handles a refresh used; blank values never overwrite stored ones
    """
    updates = {}
    if _trimmed(github_login):
        updates[GITHUB_LOGIN_FIELD] = _trimmed(github_login)
    if _trimmed(gitlab_username):
        updates[GITLAB_USERNAME_FIELD] = _trimmed(gitlab_username)

    if not updates:
        return

    (client or get_redis()).hset(user_meta_key(user_id), mapping=updates)
