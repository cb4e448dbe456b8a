from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet


logger = logging.getLogger(__name__)


def generate_fernet_key() -> str:
    return Fernet.generate_key().decode("utf-8")


def load_or_create_key(key_path: Path) -> str:
    """Return the Fernet key stored at `key_path`, creating it on first use."""
    if key_path.exists():
        return key_path.read_text(encoding="utf-8").strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = generate_fernet_key()
    key_path.write_text(key, encoding="utf-8")
    if os.name == "posix":
        os.chmod(key_path, 0o600)
    logger.info("Created encryption key: %s", key_path)
    return key


class SecretBox:
    """Symmetric encryption for connection secrets at rest."""

    def __init__(self, key: str):
        if not key:
            raise RuntimeError("Encryption key is empty")
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt_text(self, plain: str) -> str:
        return self._fernet.encrypt(plain.encode("utf-8")).decode("utf-8")

    def decrypt_text(self, cipher: str) -> str:
        return self._fernet.decrypt(cipher.encode("utf-8")).decode("utf-8")
