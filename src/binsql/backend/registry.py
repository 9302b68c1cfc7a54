"""Backend factory: creates an analysis backend from configuration."""
from __future__ import annotations

from pathlib import Path

from binsql.backend.protocol import AnalysisBackend
from binsql.config.schema import BackendConfig


def create_backend(config: BackendConfig, database: str | Path | None = None) -> AnalysisBackend:
    """Create an analysis backend based on config.type.

    Supported types:
        - ``"snapshot"`` (default): Loads a JSON/YAML snapshot from *database*.
        - ``"memory"``: Empty in-memory backend (for testing).

    Raises:
        ValueError: If the backend type is not recognised or *database* is
            missing for a file-backed type.
        FileNotFoundError: If *database* does not exist.
    """
    backend_type = config.type.lower().replace("_", "-")

    if backend_type in ("snapshot", "json", "yaml"):
        from binsql.backend.memory import MemoryBackend

        if database is None:
            raise ValueError("The snapshot backend needs a database path")
        return MemoryBackend.from_file(database)

    if backend_type == "memory":
        from binsql.backend.memory import MemoryBackend

        return MemoryBackend()

    raise ValueError(
        f"Unknown backend type: {config.type!r}. "
        f"Supported: snapshot, memory"
    )
