"""
Archive password resolution and short-lived password files.
"""

import logging
import os
import tempfile
from typing import Optional

from cryptography.fernet import InvalidToken

from snaparchive.models import EffectiveJobConfig
from snaparchive.utils.crypto import open_secret
from .errors import CredentialError

logger = logging.getLogger(__name__)

PASSWORD_METHODS = ('none', 'plaintext', 'env', 'encrypted_file')


def resolve_archive_password(config: EffectiveJobConfig) -> Optional[str]:
    """
    Look up the archive password according to the job's password method.

    Returns:
        The password, or None when encryption is not requested

    Raises:
        CredentialError: If encryption is requested but no password can be obtained
    """
    if not config.encrypt_archive:
        return None

    method = config.password_method

    if method == 'plaintext':
        password = config.archive_password
        if password:
            logger.warning(f"Job '{config.job_name}' stores its archive password in plain text")

    elif method == 'env':
        if not config.password_env_var:
            raise CredentialError("password_method 'env' requires password_env_var")
        password = os.environ.get(config.password_env_var)

    elif method == 'encrypted_file':
        password = _read_sealed_password(config)

    elif method == 'none':
        raise CredentialError(
            f"Job '{config.job_name}' requests an encrypted archive but password_method is 'none'"
        )

    else:
        raise CredentialError(
            f"Invalid password method: {method}. Valid options: {list(PASSWORD_METHODS)}"
        )

    if not password:
        raise CredentialError(f"No archive password available for job '{config.job_name}' (method: {method})")

    return password


def _read_sealed_password(config: EffectiveJobConfig) -> str:
    if not config.password_secret_file or not config.password_key_env_var:
        raise CredentialError(
            "password_method 'encrypted_file' requires password_secret_file and password_key_env_var"
        )

    passphrase = os.environ.get(config.password_key_env_var)
    if not passphrase:
        raise CredentialError(f"Environment variable {config.password_key_env_var} is not set")

    try:
        with open(config.password_secret_file, 'r', encoding='utf-8') as f:
            sealed = f.read()
    except OSError as e:
        raise CredentialError(f"Failed to read password file {config.password_secret_file}: {e}")

    try:
        return open_secret(passphrase, sealed)
    except InvalidToken:
        raise CredentialError(f"Failed to decrypt {config.password_secret_file}: wrong passphrase")
    except ValueError as e:
        raise CredentialError(f"Failed to decrypt {config.password_secret_file}: {e}")


class TemporaryPasswordFile:
    """
    Private temporary file holding an archive password for the archiver.

    The file is created with owner-only permissions and removed by cleanup().
    """

    def __init__(self, password: str, temp_dir: Optional[str] = None):
        fd, self.path = tempfile.mkstemp(prefix='snaparchive_pw_', suffix='.txt', dir=temp_dir)
        try:
            os.chmod(self.path, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(password)
        except Exception:
            self.cleanup()
            raise

    def cleanup(self):
        """Remove the password file."""
        if self.path and os.path.exists(self.path):
            try:
                os.remove(self.path)
                logger.debug("Removed temporary password file")
            except OSError as e:
                logger.error(f"Failed to remove temporary password file {self.path}: {e}")
        self.path = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
