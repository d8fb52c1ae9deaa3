"""
Secrets management utilities for TRUSTGATE.

Supports multiple secret sources:
1. Environment variables (development)
2. Docker secrets files (production)

Usage:
    from trustgate.utils.secrets import get_secret

    # Automatically checks SECRET_FILE env var, then SECRET env var
    db_password = get_secret("POSTGRES_PASSWORD")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from various sources.

    Priority:
    1. {NAME}_FILE environment variable (path to file containing secret)
    2. {NAME} environment variable (direct value)
    3. /run/secrets/{name.lower()} file (Docker secrets default path)
    4. Default value

    Args:
        name: Secret name (e.g., "POSTGRES_PASSWORD")
        default: Default value if secret not found

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        try:
            with open(file_path, 'r') as f:
                logger.debug(f"Loaded secret {name} from file")
                return f.read().strip()
        except OSError as e:
            logger.warning(f"Failed to read secret file {file_path}: {e}")

    env_value = os.environ.get(name)
    if env_value:
        logger.debug(f"Loaded secret {name} from environment")
        return env_value

    docker_secret_path = f"/run/secrets/{name.lower()}"
    if os.path.isfile(docker_secret_path):
        try:
            with open(docker_secret_path, 'r') as f:
                logger.debug(f"Loaded secret {name} from Docker secrets")
                return f.read().strip()
        except OSError as e:
            logger.warning(f"Failed to read Docker secret {docker_secret_path}: {e}")

    return default


def get_required_secret(name: str) -> str:
    """
    Get a required secret, raising an error if not found.

    Raises:
        ValueError: If secret not found
    """
    value = get_secret(name)
    if value is None:
        raise ValueError(
            f"Required secret '{name}' not found. "
            f"Set {name} or {name}_FILE environment variable."
        )
    return value


def get_postgres_password() -> str:
    """Get PostgreSQL password (empty when unset, for local trust auth)."""
    return get_secret("POSTGRES_PASSWORD", "") or ""


def get_totp_encryption_key() -> Optional[str]:
    """Get the Fernet key used to encrypt TOTP secrets at rest, if configured."""
    return get_secret("TOTP_ENCRYPTION_KEY")


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for safe logging.

    Returns:
        Masked string like "abc...xyz"
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
