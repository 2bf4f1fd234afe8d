from __future__ import annotations

from typing import Optional

import keyring
from keyring.errors import KeyringError


_SERVICE = "callclips"


def store_secret(name: str, value: str) -> None:
    keyring.set_password(_SERVICE, name, value)


def load_secret(name: str) -> Optional[str]:
    try:
        raw = keyring.get_password(_SERVICE, name)
    except KeyringError:
        return None
    if not raw or not raw.strip():
        return None
    return raw.strip()


def delete_secret(name: str) -> None:
    keyring.delete_password(_SERVICE, name)
