"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for the soft, deploy-time settings of the ledger
(community identity, default currency, API port).  Secrets such as
``DATABASE_URL`` and ``JWT_SECRET`` come from the environment, and reward
amounts live in the ``settings`` table so admins can tune them live.

Usage::

    from tally.config import load_config

    cfg = load_config()           # reads ./config.yaml by default
    print(cfg.default_currency)   # "credits"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Ledger
    default_currency: str = "credits"

    # API
    api_port: int = 8000


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return TallyConfig(
        community_name=raw["community_name"],
        default_currency=str(raw.get("default_currency") or "credits"),
        api_port=int(raw.get("api_port", 8000)),
    )
