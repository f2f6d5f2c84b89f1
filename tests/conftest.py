import json

import pytest
from google.api_core import exceptions

from receipt_approvals.config import DirectorySettings
from receipt_approvals.services.directory import Group, Member, MemberType, UserProfile
from receipt_approvals.services.hierarchy import HierarchyResolver


def user(email):
    return Member(email=email, type=MemberType.USER)


def subgroup(email):
    return Member(email=email, type=MemberType.GROUP)


def profile(email, name=None):
    return UserProfile(primaryEmail=email, fullName=name or email.split("@")[0].upper())


class FakeDirectory:
    """In-memory directory. Unknown groups and users raise NotFound like the Admin SDK."""

    def __init__(self, groups_by_user=None, members=None, groups=None, users=None, errors=None):
        self.groups_by_user = groups_by_user or {}
        self.members = members or {}
        self.groups = groups or {}
        self.users = users or {}
        self.errors = errors or {}
        self.calls = []

    def _record(self, op, key):
        self.calls.append((op, key))
        if (op, key) in self.errors:
            raise self.errors[(op, key)]

    def list_groups_for_user(self, email):
        self._record("groups_for_user", email)
        return list(self.groups_by_user.get(email, []))

    def list_group_members(self, group_email, include_derived=True):
        self._record("members", group_email)
        if group_email not in self.members:
            raise exceptions.NotFound(f"Group not found: {group_email}")
        return list(self.members[group_email])

    def get_group(self, group_email):
        self._record("group", group_email)
        if group_email not in self.groups:
            raise exceptions.NotFound(f"Group not found: {group_email}")
        return self.groups[group_email]

    def get_user_profile(self, email):
        self._record("user", email)
        if email not in self.users:
            raise exceptions.NotFound(f"User not found: {email}")
        return self.users[email]

    def member_lookups(self):
        return [key for op, key in self.calls if op == "members"]


@pytest.fixture
def directory_settings():
    return DirectorySettings(
        service_account_json=json.dumps({"client_email": "sa@project.iam.gserviceaccount.com", "private_key": "key"}),
        admin_user_email="admin@asepeyo.es",
    )


@pytest.fixture
def team_directory():
    """a@x.com sits in personal group p@x.com whose director subgroup d@x.com holds m1 and m2."""
    return FakeDirectory(
        groups_by_user={
            "a@x.com": [Group(email="p@x.com", name="EU Personal")],
            "m1@x.com": [Group(email="d@x.com", name="EU Director")],
            "d@x.com": [Group(email="p@x.com", name="EU Personal"), Group(email="all@x.com", name="All Staff")],
        },
        members={
            "p@x.com": [subgroup("d@x.com"), user("a@x.com"), user("b@x.com"), user("m1@x.com"), user("m2@x.com")],
            "d@x.com": [user("m1@x.com"), user("m2@x.com"), user("a@x.com")],
        },
        groups={"d@x.com": Group(email="d@x.com", name="EU Director")},
        users={
            "m1@x.com": profile("m1@x.com", "Manager One"),
            "m2@x.com": profile("m2@x.com", "Manager Two"),
            "a@x.com": profile("a@x.com", "Ana"),
        },
    )


@pytest.fixture
def make_resolver(directory_settings):
    def _make(directory, settings=None):
        return HierarchyResolver(settings or directory_settings, directory_factory=lambda _settings: directory)

    return _make
