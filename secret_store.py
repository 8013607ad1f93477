"""
Gemini API key storage.

Lookup order matches the app: process environment first, then the local
.env file. Writes go to the .env file only, never to logs.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values, set_key, unset_key

from errors import StoreAccessError

logger = logging.getLogger(__name__)

CREDENTIAL_ENV_VAR = "GEMINI_API_KEY"


class EnvSecretStore:
    def __init__(self, env_file: str = ".env", var_name: str = CREDENTIAL_ENV_VAR):
        self.env_file = Path(env_file)
        self.var_name = var_name

    def get_credential(self) -> str:
        value = os.environ.get(self.var_name, "")
        if not value and self.env_file.exists():
            try:
                value = dotenv_values(self.env_file).get(self.var_name) or ""
            except OSError as e:
                raise StoreAccessError(str(e)) from e
        return value.strip()

    def set_credential(self, value: str) -> None:
        value = value.strip()
        if not value:
            raise StoreAccessError("refusing to store an empty key")
        try:
            self.env_file.touch(exist_ok=True)
            set_key(str(self.env_file), self.var_name, value)
        except OSError as e:
            raise StoreAccessError(str(e)) from e
        os.environ[self.var_name] = value
        logger.info("Stored %s in %s", self.var_name, self.env_file)

    def delete_credential(self) -> None:
        os.environ.pop(self.var_name, None)
        if not self.env_file.exists():
            return
        try:
            unset_key(str(self.env_file), self.var_name)
        except OSError as e:
            raise StoreAccessError(str(e)) from e
        logger.info("Removed %s from %s", self.var_name, self.env_file)

    def has_credential(self) -> bool:
        return bool(self.get_credential())


class MemorySecretStore:
    """Session-only key holder, used by the Streamlit sidebar."""

    def __init__(self, value: Optional[str] = None):
        self._value = (value or "").strip()

    def get_credential(self) -> str:
        return self._value

    def set_credential(self, value: str) -> None:
        self._value = value.strip()

    def delete_credential(self) -> None:
        self._value = ""

    def has_credential(self) -> bool:
        return bool(self._value)
