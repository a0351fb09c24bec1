"""Deployment configuration — resolved addresses and pond parameters.

The service never looks contract addresses up from ambient state. A
MinnowConfig is built once at startup (from a JSON file, from the
environment, or directly) and handed to MinnowService.

Environment variables (a .env file is honoured):
    MINNOW_TOKEN_ADDRESS     token distributed to claimants (required)
    MINNOW_POND_ADDRESS      deployed pond contract, if any
    MINNOW_SWAP_ADDRESS      deployed swap-and-claim contract, if any
    MINNOW_OPERATOR          address allowed to register commitments
    MINNOW_CLOSE_THRESHOLD   period close threshold in wei
    MINNOW_EVENT_LOG         path of the JSONL audit log
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from minnow.crypto.encoding import normalize_address
from minnow.pond.ledger import DEFAULT_CLOSE_THRESHOLD

ENV_PREFIX = "MINNOW_"


@dataclass(frozen=True)
class MinnowConfig:
    """Explicit configuration for one pond deployment."""
    token_address: str
    pond_address: Optional[str] = None
    swap_address: Optional[str] = None
    operator: Optional[str] = None
    close_threshold: int = DEFAULT_CLOSE_THRESHOLD
    event_log_path: Optional[Path] = None

    def __post_init__(self) -> None:
        # Normalise addresses once so every consumer sees checksum form
        for name in ("token_address", "pond_address", "swap_address", "operator"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, normalize_address(value))
        if isinstance(self.close_threshold, bool) or not isinstance(self.close_threshold, int):
            raise ValueError("close_threshold must be an integer (wei)")
        if self.close_threshold <= 0:
            raise ValueError("close_threshold must be positive")
        if self.event_log_path is not None and not isinstance(self.event_log_path, Path):
            object.__setattr__(self, "event_log_path", Path(self.event_log_path))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MinnowConfig:
        if "token_address" not in data:
            raise ValueError("Missing required config key: token_address")
        threshold = data.get("close_threshold", DEFAULT_CLOSE_THRESHOLD)
        return cls(
            token_address=data["token_address"],
            pond_address=data.get("pond_address"),
            swap_address=data.get("swap_address"),
            operator=data.get("operator"),
            close_threshold=int(threshold),
            event_log_path=data.get("event_log_path"),
        )

    @classmethod
    def from_file(cls, path: Path) -> MinnowConfig:
        """Load from a JSON document with the field names as keys."""
        raw = path.read_text(encoding="utf-8")
        return cls.from_dict(json.loads(raw))

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> MinnowConfig:
        """Load from MINNOW_* environment variables.

        Values already present in the environment win over the .env file.
        """
        load_dotenv(env_file)
        data: dict[str, Any] = {}
        for key, field_name in (
            ("TOKEN_ADDRESS", "token_address"),
            ("POND_ADDRESS", "pond_address"),
            ("SWAP_ADDRESS", "swap_address"),
            ("OPERATOR", "operator"),
            ("CLOSE_THRESHOLD", "close_threshold"),
            ("EVENT_LOG", "event_log_path"),
        ):
            value = os.getenv(ENV_PREFIX + key)
            if value:
                data[field_name] = value
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "pond_address": self.pond_address,
            "swap_address": self.swap_address,
            "operator": self.operator,
            "close_threshold": str(self.close_threshold),
            "event_log_path": str(self.event_log_path) if self.event_log_path else None,
        }
