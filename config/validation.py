# config/validation.py

"""
Environment variable validation for the DataSync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

_KNOWN_DUPLICATE_MODES = {"skip", "update", "merge", "error"}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    duplicate_mode = os.environ.get("DATASYNC_INCREMENTAL_ON_DUPLICATE")
    if duplicate_mode and duplicate_mode not in _KNOWN_DUPLICATE_MODES:
        errors.append(
            f"DATASYNC_INCREMENTAL_ON_DUPLICATE must be one of: {', '.join(sorted(_KNOWN_DUPLICATE_MODES))}"
        )

    # Remaining checks only apply in production
    if flask_env != "production":
        return len(errors) == 0, errors

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to the destination database URL.")

    if not os.environ.get("DATASYNC_SOURCE_DATABASE_URL"):
        errors.append(
            "DATASYNC_SOURCE_DATABASE_URL is required in production. "
            "Set it to the source database holding the change tracker."
        )

    if os.environ.get("DATASYNC_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when DATASYNC_WORKER_ENABLED=true")

    return len(errors) == 0, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
