"""Identifier validation shared by the client, the operations and the CLI.

Identifiers end up as URL path segments, so only a conservative character set
is accepted: letters, numbers, underscores and hyphens.
"""
import re

from .errors import InvalidInputError

IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
IP_ADDRESS_PATTERN = re.compile(r'^[0-9a-fA-F:.]+$')


def validate_identifier(kind: str, value: str) -> str:
    """
    Validate a path identifier such as an app name or machine id.

    Args:
        kind: Human readable name of the identifier, used in the error message
        value: Identifier to validate

    Returns:
        The identifier unchanged

    Raises:
        InvalidInputError: If the identifier is empty or contains illegal characters
    """
    if not isinstance(value, str) or not value:
        raise InvalidInputError(f"{kind} cannot be empty")
    if not IDENTIFIER_PATTERN.match(value):
        raise InvalidInputError(
            f"Invalid {kind} '{value}': allowed characters are letters, numbers, "
            f"underscores (_) and hyphens (-)"
        )
    return value


def validate_ip_address(value: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidInputError("IP address cannot be empty")
    if not IP_ADDRESS_PATTERN.match(value):
        raise InvalidInputError(f"Invalid IP address '{value}'")
    return value


def validate_positive(kind: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInputError(f"{kind} must be a positive integer, got {value!r}")
    return value
