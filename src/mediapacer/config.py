"""Configuration loading and session credentials."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring

from mediapacer.models import PacingConfig

SERVICE_NAME = "mediapacer"
KEY_NAME = "session_token"
TOKEN_ENV_VAR = "MEDIAPACER_SESSION_TOKEN"

DEFAULT_CONFIG_PATH = Path("config/pacing_config.json")


def get_session_token() -> str:
    """Get the remote session token: system keyring first, then env var fallback.

    Raises:
        RuntimeError: If no token found anywhere, with actionable instructions.
    """
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if token:
        return token

    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        return token

    raise RuntimeError(
        "Session token not found.\n"
        "Set it with: mediapacer config set-token YOUR_TOKEN\n"
        f"Or: export {TOKEN_ENV_VAR}=your-token"
    )


def set_session_token(token: str) -> None:
    """Store the session token in the system keyring."""
    keyring.set_password(SERVICE_NAME, KEY_NAME, token)


def load_pacing_config(config_path: Path | None = None) -> PacingConfig:
    """Load pacing configuration from JSON, falling back to defaults.

    Reads from ``config/pacing_config.json`` when *config_path* is ``None``.
    Unknown keys are ignored; JSON lists for range settings (e.g.
    ``"inter_item_fallback": [160, 220]``) become tuples.

    Raises:
        ValueError: If a range setting is not a two-element ``[low, high]``
            with ``low <= high``.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    # Only recognised fields
    field_names = {f.name for f in PacingConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}

    for name, value in kwargs.items():
        if isinstance(value, list):
            if len(value) != 2 or value[0] > value[1]:
                raise ValueError(f"{name} must be [low, high], got {value!r}")
            kwargs[name] = tuple(value)

    return PacingConfig(**kwargs)
