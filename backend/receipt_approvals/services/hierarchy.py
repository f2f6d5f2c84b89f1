"""
Manager hierarchy resolution over directory group membership.

There is no manager field in the directory, so reporting lines are derived
from naming conventions: a "personal" group represents a team and contains a
"director" subgroup whose members manage that team. Superior managers are
guessed from the team prefix (e.g. ``eu_ag_director@<domain>``).
"""

import logging
import re
from typing import Callable, Iterable, List, Optional, Sequence

from google.api_core import exceptions
from pydantic import BaseModel

from ..config import DirectorySettings
from ..errors import ConfigurationError, ErrorKind, classify_directory_error
from .directory import DirectoryClient, GoogleDirectoryClient, Group, Member, MemberType


logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[-_@.]")
_PREFIX_DELIMITERS = re.compile(r"[\s_-]")

DirectoryFactory = Callable[[DirectorySettings], DirectoryClient]


class Manager(BaseModel):
    displayName: str
    email: str
    photoUrl: Optional[str] = None


class ManagedUser(BaseModel):
    email: str


class ManagersResult(BaseModel):
    managers: Optional[List[Manager]] = None
    error: Optional[str] = None
    errorKind: Optional[ErrorKind] = None


class ManagedUsersResult(BaseModel):
    users: Optional[List[ManagedUser]] = None
    error: Optional[str] = None
    errorKind: Optional[ErrorKind] = None


def _tokens(name: Optional[str], email: Optional[str]) -> List[str]:
    combined = f"{name or ''} {email or ''}".lower()
    return _SEPARATORS.sub(" ", combined).split()


def is_director_group(group: Group) -> bool:
    return "director" in _tokens(group.name, group.email)


def is_personal_group(group: Group) -> bool:
    return "personal" in _tokens(group.name, group.email)


def group_prefix(name: str) -> str:
    """First token of a group name, split on whitespace, hyphen or underscore."""
    return _PREFIX_DELIMITERS.split(name, maxsplit=1)[0]


def superior_candidates(prefix: str, domain: str, suffixes: Sequence[str]) -> List[str]:
    return [f"{prefix.lower()}{suffix}@{domain}" for suffix in suffixes]


def _same_email(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


def _unique_by_email(items: Iterable, exclude: Optional[str] = None) -> list:
    seen = set()
    unique = []
    for item in items:
        key = item.email.strip().lower()
        if key in seen or (exclude and _same_email(item.email, exclude)):
            continue
        seen.add(key)
        unique.append(item)
    return unique


class HierarchyResolver:
    def __init__(
        self,
        settings: DirectorySettings,
        directory_factory: DirectoryFactory = GoogleDirectoryClient.from_settings,
    ):
        self.settings = settings
        self._directory_factory = directory_factory

    def _check_preconditions(self, email: str) -> None:
        if not self.settings.is_configured:
            raise ConfigurationError("Service account credentials or admin email not configured.")
        if not email or not email.strip():
            raise ConfigurationError("Email not provided or could not be verified.")

    def open_directory(self, email: str) -> DirectoryClient:
        """Check preconditions and build a client with fresh delegated credentials."""
        self._check_preconditions(email)
        return self._directory_factory(self.settings)

    # Ascending: who manages this user
    def resolve_managers(self, user_email: str) -> ManagersResult:
        directory = self.open_directory(user_email)
        try:
            managers = self._collect_managers(directory, user_email)
        except Exception as exc:
            kind, message = classify_directory_error(exc, user_email, "managers")
            logger.error("Error fetching managers for %s: %s", user_email, exc)
            return ManagersResult(managers=None, error=message, errorKind=kind)
        return ManagersResult(managers=managers, error=None)

    def _collect_managers(self, directory: DirectoryClient, user_email: str) -> List[Manager]:
        groups = directory.list_groups_for_user(user_email)
        if not groups:
            return []

        managers: List[Manager] = []
        for personal_group in (g for g in groups if is_personal_group(g)):
            managers.extend(self._direct_managers(directory, personal_group, user_email))

        reference = next((g for g in groups if is_director_group(g)), None) or next(
            (g for g in groups if is_personal_group(g)), None
        )
        if reference is not None and reference.name:
            managers.extend(self._superior_managers(directory, reference, user_email))

        return _unique_by_email(managers)

    def _direct_managers(self, directory: DirectoryClient, personal_group: Group, user_email: str) -> List[Manager]:
        try:
            members = directory.list_group_members(personal_group.email, include_derived=True)
        except exceptions.NotFound:
            logger.warning("Personal group %s not found, skipping", personal_group.email)
            return []

        found: List[Manager] = []
        for member in members:
            if member.type != MemberType.GROUP:
                continue
            try:
                subgroup = directory.get_group(member.email)
            except exceptions.NotFound:
                logger.warning("Subgroup %s of %s not found, skipping", member.email, personal_group.email)
                continue
            if not is_director_group(subgroup):
                continue
            try:
                director_members = directory.list_group_members(subgroup.email, include_derived=True)
            except exceptions.NotFound:
                logger.warning("Director group %s not found, skipping", subgroup.email)
                continue
            found.extend(self._profiles(directory, director_members, exclude=user_email))
        return found

    def _superior_managers(self, directory: DirectoryClient, reference: Group, user_email: str) -> List[Manager]:
        prefix = group_prefix(reference.name)
        if not prefix:
            return []

        candidates = superior_candidates(prefix, self.settings.domain, self.settings.superior_group_suffixes)
        for candidate in candidates:
            try:
                members = directory.list_group_members(candidate, include_derived=True)
            except exceptions.NotFound:
                logger.debug("Superior group candidate %s does not exist", candidate)
                continue
            except exceptions.Forbidden:
                raise
            except exceptions.GoogleAPICallError as exc:
                logger.error("Error checking superior manager group %s: %s", candidate, exc)
                continue
            if members:
                return self._profiles(directory, members, exclude=user_email)
        return []

    def _profiles(self, directory: DirectoryClient, members: Iterable[Member], exclude: str) -> List[Manager]:
        managers: List[Manager] = []
        for member in members:
            if member.type != MemberType.USER or _same_email(member.email, exclude):
                continue
            try:
                profile = directory.get_user_profile(member.email)
            except exceptions.NotFound:
                logger.warning("Could not find user details for manager email: %s", member.email)
                continue
            managers.append(
                Manager(
                    displayName=profile.fullName or "No Name",
                    email=profile.primaryEmail,
                    photoUrl=profile.thumbnailPhotoUrl,
                )
            )
        return managers

    # Descending: who does this manager manage
    def resolve_managed_users(self, manager_email: str) -> ManagedUsersResult:
        directory = self.open_directory(manager_email)
        try:
            users = self._collect_managed_users(directory, manager_email)
        except Exception as exc:
            kind, message = classify_directory_error(exc, manager_email, "managed users")
            logger.error("Error fetching managed users for %s: %s", manager_email, exc)
            return ManagedUsersResult(users=None, error=message, errorKind=kind)
        return ManagedUsersResult(users=users, error=None)

    def _collect_managed_users(self, directory: DirectoryClient, manager_email: str) -> List[ManagedUser]:
        director_groups = [g for g in directory.list_groups_for_user(manager_email) if is_director_group(g)]
        if not director_groups:
            return []

        users: List[ManagedUser] = []
        for director_group in director_groups:
            try:
                parents = directory.list_groups_for_user(director_group.email)
            except exceptions.NotFound:
                logger.warning("Director group %s not found while looking up parents", director_group.email)
                continue
            for parent in (p for p in parents if is_personal_group(p)):
                try:
                    members = directory.list_group_members(parent.email, include_derived=True)
                except exceptions.NotFound:
                    logger.warning("Personal group %s not found, skipping", parent.email)
                    continue
                users.extend(ManagedUser(email=m.email) for m in members if m.type == MemberType.USER)
            if not any(is_personal_group(p) for p in parents):
                logger.info("No personal parent group found for %s", director_group.email)

        return _unique_by_email(users, exclude=manager_email)
