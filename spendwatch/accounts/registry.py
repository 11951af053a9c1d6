"""Pydantic models for the metered-billing account registry.

The registry is a read-only YAML file listing the external billing accounts
to sync, the subjects that spend is attributed to, and which resources belong
to which subject. Managing accounts and their credentials happens elsewhere;
this service only reads the file.

Example accounts.yaml:
    subjects:
      - id: data-platform
        name: Data Platform
        email: platform-leads@example.org
    accounts:
      - id: prod-main
        name: Production
        credentials_ref: "123456789012"
        region: us-east-1
        default_subject: data-platform
    assignments:
      - account_id: prod-main
        resource_type: ec2
        resource_id: i-0abc123
        subject_id: data-platform
"""

import logging
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+([._-][A-Za-z0-9]+)*$")


def _validate_identifier(v: str, label: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{label} cannot be empty")
    if not _ID_PATTERN.match(v):
        raise ValueError(f"{label} may only contain letters, digits, '.', '_' and '-': {v}")
    return v


class SubjectConfig(BaseModel):
    """A project or cost center that spend is attributed to."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    """Subject identifier used throughout the ledger and policies."""

    name: str | None = None
    """Human-readable name used in alert messages."""

    email: str | None = None
    """Alert recipient. Subjects without an email are evaluated but not notified."""

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _validate_identifier(v, "Subject ID")

    @property
    def display_name(self) -> str:
        return self.name or self.id


class AccountConfig(BaseModel):
    """An external billing account whose costs are synced daily."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    name: str | None = None
    credentials_ref: str
    """Opaque reference the provider uses to identify the account."""

    region: str = "us-east-1"
    default_subject: str | None = None
    """Subject receiving rows with no resource-level assignment."""

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _validate_identifier(v, "Account ID")


class ResourceAssignment(BaseModel):
    """Routes one provider resource to a subject."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    resource_type: str = "other"
    resource_id: str
    subject_id: str


class AccountRegistry(BaseModel):
    """Top-level model parsed from accounts.yaml."""

    model_config = ConfigDict(extra="forbid")

    subjects: list[SubjectConfig] = Field(default_factory=list)
    accounts: list[AccountConfig] = Field(default_factory=list)
    assignments: list[ResourceAssignment] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_references(self) -> "AccountRegistry":
        """Ensure IDs are unique and every reference points at a known entry."""
        for label, ids in (
            ("subject", [s.id for s in self.subjects]),
            ("account", [a.id for a in self.accounts]),
        ):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"Duplicate {label} IDs found: {', '.join(duplicates)}")

        subject_ids = {s.id for s in self.subjects}
        account_ids = {a.id for a in self.accounts}

        for account in self.accounts:
            if account.default_subject and account.default_subject not in subject_ids:
                raise ValueError(
                    f"Account '{account.id}' has unknown default_subject "
                    f"'{account.default_subject}'"
                )
        for assignment in self.assignments:
            if assignment.account_id not in account_ids:
                raise ValueError(
                    f"Assignment for resource '{assignment.resource_id}' "
                    f"references unknown account '{assignment.account_id}'"
                )
            if assignment.subject_id not in subject_ids:
                raise ValueError(
                    f"Assignment for resource '{assignment.resource_id}' "
                    f"references unknown subject '{assignment.subject_id}'"
                )
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "AccountRegistry":
        """Load the account registry from a YAML file.

        Args:
            path: Path to accounts.yaml.

        Returns:
            Parsed and validated AccountRegistry.

        Raises:
            FileNotFoundError: If file doesn't exist.
            yaml.YAMLError: If YAML syntax is invalid.
            pydantic.ValidationError: If YAML structure is invalid.
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Failed to parse YAML file {path}: {e}") from e

        return cls.model_validate(data or {})

    def get_account(self, account_id: str) -> AccountConfig | None:
        """Get an account by ID, or None if unknown."""
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None

    def get_subject(self, subject_id: str) -> SubjectConfig | None:
        """Get a subject by ID, or None if unknown."""
        for subject in self.subjects:
            if subject.id == subject_id:
                return subject
        return None

    def has_subject(self, subject_id: str) -> bool:
        return self.get_subject(subject_id) is not None

    def route(self, account_id: str, resource_id: str) -> str | None:
        """Resolve which subject a provider row belongs to.

        A resource-level assignment wins; otherwise the account's default
        subject is used.

        Args:
            account_id: Registry account the row was fetched for.
            resource_id: Provider resource key of the row.

        Returns:
            The subject ID, or None if the row cannot be attributed.
        """
        for assignment in self.assignments:
            if assignment.account_id == account_id and assignment.resource_id == resource_id:
                return assignment.subject_id
        account = self.get_account(account_id)
        if account is None:
            return None
        return account.default_subject


def load_registry(path: Path) -> AccountRegistry:
    """Load the registry, treating a missing file as an empty registry.

    Args:
        path: Path to accounts.yaml.

    Returns:
        The parsed registry (empty if the file does not exist).
    """
    if not path.exists():
        logger.warning("Account registry %s not found; no accounts will be synced", path)
        return AccountRegistry()
    registry = AccountRegistry.from_yaml(path)
    logger.info(
        "Loaded account registry: %d accounts, %d subjects, %d assignments",
        len(registry.accounts),
        len(registry.subjects),
        len(registry.assignments),
    )
    return registry
