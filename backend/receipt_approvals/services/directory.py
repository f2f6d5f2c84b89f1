"""
Google Workspace directory adapter.

Wraps the handful of Admin SDK Directory API calls the hierarchy resolver
needs (groups of a user, members of a group, group details, user profile)
behind a small interface so the traversal can run against an in-memory fake.
Calls go through an AuthorizedSession with delegated service-account
credentials; failures surface as google.api_core exceptions (Forbidden,
NotFound, ...).
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol
from urllib.parse import quote

from google.api_core import exceptions
from google.auth import exceptions as auth_exceptions
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.service_account import Credentials
from pydantic import BaseModel

from ..config import DIRECTORY_SCOPES, DirectorySettings
from ..errors import ConfigurationError


logger = logging.getLogger(__name__)

DIRECTORY_API = "https://admin.googleapis.com/admin/directory/v1"
PAGE_SIZE = 200


class MemberType(str, Enum):
    USER = "USER"
    GROUP = "GROUP"
    CUSTOMER = "CUSTOMER"
    OTHER = "OTHER"


class Group(BaseModel):
    email: str
    name: str = ""


class Member(BaseModel):
    email: str
    type: MemberType = MemberType.USER


class UserProfile(BaseModel):
    primaryEmail: str
    fullName: Optional[str] = None
    thumbnailPhotoUrl: Optional[str] = None


class DirectoryClient(Protocol):
    def list_groups_for_user(self, email: str) -> List[Group]: ...

    def list_group_members(self, group_email: str, include_derived: bool = True) -> List[Member]: ...

    def get_group(self, group_email: str) -> Group: ...

    def get_user_profile(self, email: str) -> UserProfile: ...


def _to_group(item: Dict[str, Any]) -> Group:
    return Group(email=item.get("email", ""), name=item.get("name") or "")


def _to_member(item: Dict[str, Any]) -> Member:
    raw_type = (item.get("type") or "OTHER").upper()
    try:
        member_type = MemberType(raw_type)
    except ValueError:
        member_type = MemberType.OTHER
    return Member(email=item["email"], type=member_type)


class GoogleDirectoryClient:
    """Directory Service backed by the Admin SDK REST API."""

    def __init__(self, session: AuthorizedSession, timeout: float = 30.0):
        self._session = session
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: DirectorySettings) -> "GoogleDirectoryClient":
        try:
            credentials = Credentials.from_service_account_info(
                settings.credentials_info(),
                scopes=DIRECTORY_SCOPES,
                subject=settings.admin_user_email,
            )
        except (auth_exceptions.GoogleAuthError, ValueError) as exc:
            raise ConfigurationError(f"Service account credentials are unusable: {exc}") from exc
        return cls(AuthorizedSession(credentials), timeout=settings.request_timeout)

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._session.get(f"{DIRECTORY_API}{path}", params=params, timeout=self._timeout)
        if response.status_code >= 400:
            raise exceptions.from_http_response(response)
        return response.json()

    def _paginate(self, path: str, key: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        params = dict(params, maxResults=PAGE_SIZE)
        while True:
            payload = self._get(path, dict(params))
            yield from payload.get(key) or []
            token = payload.get("nextPageToken")
            if not token:
                return
            params["pageToken"] = token

    def list_groups_for_user(self, email: str) -> List[Group]:
        logger.debug("Listing groups for %s", email)
        return [_to_group(item) for item in self._paginate("/groups", "groups", {"userKey": email})]

    def list_group_members(self, group_email: str, include_derived: bool = True) -> List[Member]:
        logger.debug("Listing members of %s (derived=%s)", group_email, include_derived)
        path = f"/groups/{quote(group_email, safe='@')}/members"
        params = {"includeDerivedMembership": "true" if include_derived else "false"}
        return [_to_member(item) for item in self._paginate(path, "members", params) if item.get("email")]

    def get_group(self, group_email: str) -> Group:
        return _to_group(self._get(f"/groups/{quote(group_email, safe='@')}"))

    def get_user_profile(self, email: str) -> UserProfile:
        data = self._get(f"/users/{quote(email, safe='@')}")
        return UserProfile(
            primaryEmail=data.get("primaryEmail") or email,
            fullName=(data.get("name") or {}).get("fullName"),
            thumbnailPhotoUrl=data.get("thumbnailPhotoUrl"),
        )
