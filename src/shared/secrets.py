"""
Secrets and session-file handling.

API credentials for each mirrored account live in the ``auth_sessions``
table; the only service-wide secret is the Fernet key protecting Telethon
session files at rest.  It is read from the system keychain
(``secret-tool`` / libsecret) with an environment-variable fallback for
development machines.

Telethon needs a real SQLite file path, so an encrypted session is
decrypted into a RAM-backed tmpfs file for the lifetime of one remote
connection and shredded when the connection is torn down.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

_SERVICE = "tg-mirror"
_SESSION_SUFFIX = ".session"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Runs ``secret-tool lookup service <service> key <key_name>`` and falls
    back to ``TG_MIRROR_<KEY_NAME>`` in the environment.

    Raises:
        RuntimeError: If the secret is found in neither place.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = f"TG_MIRROR_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


# ---------------------------------------------------------------------------
# Session file encryption (Fernet)
# ---------------------------------------------------------------------------


def encrypt_session_file(path: Path, key: str) -> None:
    """Encrypt a Telethon session file in place and restrict it to 0600."""
    fernet = Fernet(key.encode())
    path.write_bytes(fernet.encrypt(path.read_bytes()))
    path.chmod(0o600)
    logger.info("Session file encrypted: %s", path)


def decrypt_session_file(path: Path, key: str) -> bytes:
    """Return the decrypted contents of an encrypted session file.

    Raises:
        FileNotFoundError: The file does not exist.
        cryptography.fernet.InvalidToken: Wrong key or tampered file.
    """
    plaintext = Fernet(key.encode()).decrypt(path.read_bytes())
    logger.debug("Session file decrypted in memory: %s", path)
    return plaintext


def generate_encryption_key() -> str:
    """Generate a new Fernet key for ``session_encryption_key``."""
    return Fernet.generate_key().decode()


# ---------------------------------------------------------------------------
# tmpfs materialization
# ---------------------------------------------------------------------------


def materialize_session(path: Path, key: str) -> str:
    """Decrypt ``path`` into a private tmpfs file.

    Returns:
        The session *base* path (without the ``.session`` suffix, which
        Telethon appends itself).  Pass it to :func:`shred_session` once
        the client is disconnected.
    """
    session_bytes = decrypt_session_file(path, key)
    shm_dir = "/dev/shm" if os.path.isdir("/dev/shm") else None
    fd, tmp_path = tempfile.mkstemp(suffix=_SESSION_SUFFIX, dir=shm_dir)
    with os.fdopen(fd, "wb") as handle:
        handle.write(session_bytes)
    os.chmod(tmp_path, 0o600)
    return tmp_path.removesuffix(_SESSION_SUFFIX)


def shred_session(base_path: str) -> None:
    """Remove a materialized session file and its SQLite side files."""
    session_file = base_path + _SESSION_SUFFIX
    for path in (
        session_file,
        session_file + "-journal",
        session_file + "-wal",
        session_file + "-shm",
    ):
        if os.path.exists(path):
            os.remove(path)
