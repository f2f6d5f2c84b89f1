import json
from functools import lru_cache
from typing import Annotated, Any, Dict, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigurationError


DEFAULT_DOMAIN = "asepeyo.es"
DEFAULT_SUPERIOR_SUFFIXES: Tuple[str, ...] = ("_ag_director", "_director", "_ac_director")
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

DIRECTORY_SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.group.readonly",
    "https://www.googleapis.com/auth/admin.directory.group.member.readonly",
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
]


def _split_csv(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(part.strip() for part in value if part and part.strip())


class DirectorySettings(BaseSettings):
    """Everything the hierarchy resolver needs to talk to the directory."""

    model_config = SettingsConfigDict(populate_by_name=True)

    service_account_json: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("service_account_json", "GOOGLE_SERVICE_ACCOUNT_JSON")
    )
    admin_user_email: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("admin_user_email", "GOOGLE_ADMIN_USER_EMAIL")
    )
    domain: str = Field(default=DEFAULT_DOMAIN, validation_alias=AliasChoices("domain", "ALLOWED_DOMAIN"))
    superior_group_suffixes: Annotated[Tuple[str, ...], NoDecode] = DEFAULT_SUPERIOR_SUFFIXES
    request_timeout: float = Field(default=30.0, validation_alias=AliasChoices("request_timeout", "DIRECTORY_TIMEOUT"))

    @field_validator("superior_group_suffixes", mode="before")
    @classmethod
    def _parse_suffixes(cls, value: Any) -> Tuple[str, ...]:
        return _split_csv(value) or DEFAULT_SUPERIOR_SUFFIXES

    @property
    def is_configured(self) -> bool:
        return bool(self.service_account_json and self.admin_user_email)

    def credentials_info(self) -> Dict[str, Any]:
        """Parse the service-account JSON, un-escaping the PEM key newlines."""
        if not self.is_configured:
            raise ConfigurationError("Service account credentials or admin email not configured.")
        try:
            info = json.loads(self.service_account_json)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON: {exc}") from exc
        if not isinstance(info, dict) or not info.get("client_email") or not info.get("private_key"):
            raise ConfigurationError("Service account JSON must contain client_email and private_key.")
        info["private_key"] = info["private_key"].replace("\\n", "\n")
        info.setdefault("token_uri", DEFAULT_TOKEN_URI)
        return info


class AppSettings(BaseSettings):
    project_id: Optional[str] = None
    region: str = "europe-west4"
    receipts_bucket: str = "ticketimages"
    report_bucket: Optional[str] = None
    firestore_database: str = "ticketsligae"
    receipts_collection: str = "tickets"
    topic_submitted: str = "receipts.submitted"
    topic_decided: str = "receipts.decided"
    extraction_model: str = "gemini-2.5-flash"
    vertex_location: Optional[str] = None
    exporter_emails: Annotated[Tuple[str, ...], NoDecode] = ()

    @field_validator("exporter_emails", mode="before")
    @classmethod
    def _parse_exporters(cls, value: Any) -> Tuple[str, ...]:
        return tuple(email.lower() for email in _split_csv(value))

    @property
    def gemini_location(self) -> str:
        return self.vertex_location or self.region

    @property
    def report_bucket_name(self) -> str:
        return self.report_bucket or f"{self.project_id}-receipt-reports"

    def is_exporter(self, email: str) -> bool:
        return email.strip().lower() in self.exporter_emails


@lru_cache
def get_settings() -> AppSettings:
    return AppSettings()


@lru_cache
def get_directory_settings() -> DirectorySettings:
    return DirectorySettings()
