"""VaultSearch - semantic search and sync for Markdown note vaults."""

__version__ = "0.1.0"
