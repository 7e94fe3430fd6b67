"""Input validation for CLI arguments."""
import re
import sys

from ..startup import ENV_NAME_PATTERN

# Compute Engine resource names (RFC 1035)
_RESOURCE_NAME = re.compile(r'^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$')
_ZONE = re.compile(r'^[a-z]+-[a-z]+[0-9]+-[a-z]$')
_PROJECT_ID = re.compile(r'^[a-z][-a-z0-9]{4,28}[a-z0-9]$')
_SECRET_NAME = re.compile(r'^[a-zA-Z0-9_-]+$')


def _fail(*lines: str) -> None:
    for line in lines:
        print(line, file=sys.stderr)
    sys.exit(2)


def validate_instance_name(name: str) -> None:
    """
    Validate a Compute Engine instance name.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not _RESOURCE_NAME.match(name or ""):
        _fail(
            f"Error: Invalid instance name '{name}'",
            "\nInstance names must start with a lowercase letter, contain only",
            "lowercase letters, digits and hyphens, not end with a hyphen,",
            "and be at most 63 characters long.",
        )


def validate_zone(zone: str) -> None:
    if not _ZONE.match(zone or ""):
        _fail(
            f"Error: Invalid zone '{zone}'",
            "\nExpected a zone such as: us-central1-a, europe-west4-b",
        )


def validate_project_id(project_id: str) -> None:
    if not _PROJECT_ID.match(project_id or ""):
        _fail(
            f"Error: Invalid project ID '{project_id}'",
            "\nProject IDs are 6-30 lowercase letters, digits or hyphens,",
            "start with a letter and do not end with a hyphen.",
        )


def validate_secret_name(name: str) -> None:
    """
    Validate secret name matches GCP requirements.

    GCP Secret Manager allows only: [a-zA-Z0-9_-]

    The boot program exports secrets as environment variables, so names that
    are not valid variable names are accepted here but skipped on the VM.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name:
        _fail(
            "Error: Secret name cannot be empty",
            "\nSecret names must match: [a-zA-Z0-9_-]",
        )

    if not _SECRET_NAME.match(name):
        _fail(
            f"Error: Invalid secret name '{name}'",
            "\nAllowed characters: letters, numbers, underscores (_), hyphens (-)",
            "\nExamples of valid names:",
            "  ✓ ANTHROPIC_API_KEY",
            "  ✓ TELEGRAM_BOT_TOKEN",
        )

    if not ENV_NAME_PATTERN.match(name):
        print(
            f"Warning: '{name}' is not a valid environment variable name; "
            f"the VM will not export it.",
            file=sys.stderr,
        )


def validate_secret_value(value: str) -> None:
    """
    Validate secret value is not empty.

    GCP Secret Manager does not allow empty secret payloads.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not value or value.strip() == "":
        _fail(
            "Error: Secret value cannot be empty",
            "\nGCP Secret Manager does not allow empty secret payloads.",
            "To mark a secret as not filled in yet, store the value 'UNSET'.",
        )
