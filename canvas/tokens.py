#!/usr/bin/env python3
"""Credential persistence."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class CredentialSink(ABC):
    """Receives rotated credentials from the client.

    Implementations must persist (or forward) the pair before returning;
    the client uses the new tokens immediately afterwards.
    """

    @abstractmethod
    def on_credentials_changed(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        """Store or forward a rotated token pair."""


@dataclass
class TokenData:
    """Persisted token record."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict) -> "TokenData":
        return cls(
            access_token=d.get('access_token'),
            refresh_token=d.get('refresh_token'),
            base_url=d.get('base_url'),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def token_preview(token: Optional[str], length: int = 10) -> str:
    """Short prefix of a token, safe to log."""
    if not token:
        return "<none>"
    return token[:length] + ("..." if len(token) > length else "")


class TokenStore(CredentialSink):
    """File-backed token record, readable only by the owner."""

    def __init__(self, file_path: Path):
        """Initialize token store.

        Args:
            file_path: JSON file holding the token record
        """
        self.file_path = Path(file_path).expanduser()
        self._lock = threading.RLock()

    def load(self) -> TokenData:
        """Load the token record, starting fresh when missing or unreadable."""
        if not self.file_path.exists():
            return TokenData()

        try:
            with open(self.file_path, 'r') as f:
                return TokenData.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("Could not load saved tokens from %s: %s. Starting fresh.", self.file_path, e)
            return TokenData()

    def save(self, data: TokenData) -> None:
        """Write the token record with 0600 permissions."""
        with self._lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.file_path, 'w') as f:
                json.dump(data.to_dict(), f, indent=2)
            if os.name == 'posix':
                os.chmod(self.file_path, 0o600)

    def update(self, **patch) -> TokenData:
        """Update fields of the stored record.

        Args:
            **patch: TokenData fields to replace

        Returns:
            Updated record
        """
        with self._lock:
            data = self.load()
            for key, value in patch.items():
                if hasattr(data, key):
                    setattr(data, key, value)
            self.save(data)
        return data

    def clear(self) -> None:
        """Delete the token file."""
        with self._lock:
            if self.file_path.exists():
                self.file_path.unlink()

    def on_credentials_changed(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        self.update(access_token=access_token, refresh_token=refresh_token)
        logger.info("Saved rotated tokens (access=%s)", token_preview(access_token))
