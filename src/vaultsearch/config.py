"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from vaultsearch.embedding.encoder import DEFAULT_MODEL, get_embedding_dimensions
from vaultsearch.errors import ConfigurationMissing

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_default_db_path() -> Path:
    """Prefer a local ``data/`` database when running from a checkout."""
    local_db = Path("data/vaultsearch.db")
    if local_db.exists():
        return local_db
    return Path.home() / "Documents" / "VaultSearch" / "vaultsearch.db"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    vault_path: Path | None = None
    vault_name: str = "ObsidianVault"
    model_name: str = DEFAULT_MODEL
    dimensions: int | None = None
    batch_size: int = 10
    batch_delay: float = 0.1
    preview_chars: int = 1000
    default_min_score: float = 0.7
    use_qdf: bool = False

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if self.dimensions is None:
            self.dimensions = get_embedding_dimensions(self.model_name)
        if self.batch_size < 1:
            raise ConfigurationMissing(f"batch_size must be positive, got {self.batch_size}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        model_name = env.get("EMBEDDING_MODEL") or DEFAULT_MODEL
        vault = env.get("OBSIDIAN_VAULT_PATH")
        db = env.get("VAULTSEARCH_DB")
        return cls(
            db_path=Path(db) if db else None,
            vault_path=Path(vault).expanduser() if vault else None,
            vault_name=env.get("OBSIDIAN_VAULT_NAME") or "ObsidianVault",
            model_name=model_name,
            dimensions=get_embedding_dimensions(model_name, env.get("EMBEDDING_DIMENSIONS")),
            use_qdf=env.get("VAULTSEARCH_USE_QDF", "").strip().lower() in _TRUE_VALUES,
        )

    def require_vault(self) -> Path:
        """Return the vault directory or raise ``ConfigurationMissing``."""
        if self.vault_path is None:
            raise ConfigurationMissing(
                "No vault configured; set OBSIDIAN_VAULT_PATH or pass --vault"
            )
        vault = Path(self.vault_path).expanduser()
        if not vault.is_dir():
            raise ConfigurationMissing(f"Vault path is not a directory: {vault}")
        return vault

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path
