"""Input validation for CLI arguments."""
import sys

from agent_flytoolkit.fleet.domains.errors import InvalidInputError
from agent_flytoolkit.fleet.domains.validation import validate_identifier


def validate_name(kind: str, name: str) -> None:
    """
    Validate an app name, machine id, volume id or secret name.

    Args:
        kind: What the name identifies, e.g. "app name"
        name: Name to validate

    Raises:
        SystemExit with code 2 if validation fails
    """
    try:
        validate_identifier(kind, name)
    except InvalidInputError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("\nExamples of valid names:", file=sys.stderr)
        print("  ✓ my-app", file=sys.stderr)
        print("  ✓ DATABASE_URL", file=sys.stderr)
        print("  ✓ vol_vjeylkgg6gll7j94", file=sys.stderr)
        print("\nExamples of invalid names:", file=sys.stderr)
        print("  ✗ my.app (contains dot)", file=sys.stderr)
        print("  ✗ MY SECRET (contains space)", file=sys.stderr)
        print("  ✗ ../apps (contains slash)", file=sys.stderr)
        sys.exit(2)


def require(kind: str, value, flag: str) -> str:
    """Fail with a usage error when a value is neither given on the command line nor configured."""
    if not value:
        print(f"Error: {kind} is required (pass {flag} or set it in the config file)", file=sys.stderr)
        sys.exit(2)
    validate_name(kind, value)
    return value


def validate_secret_value(value: str) -> None:
    """
    Validate secret value is not empty.

    Args:
        value: Secret value to validate

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not value or value.strip() == "":
        print("Error: Secret value cannot be empty", file=sys.stderr)
        print("\nPipe the value on stdin, e.g.: printf '%s' \"$VALUE\" | flytoolkit secrets set NAME",
              file=sys.stderr)
        sys.exit(2)
