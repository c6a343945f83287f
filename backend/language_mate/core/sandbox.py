"""Sandboxed file access - keeps stored attachments inside their root directory."""

from pathlib import Path


class SandboxError(Exception):
    pass


def resolve_sandboxed_path(root: Path, relative_path: str) -> Path:
    """Resolve a relative path within ``root``. Raises SandboxError if the path escapes."""
    base = root.resolve()
    resolved = (base / relative_path).resolve()

    if resolved == base or not resolved.is_relative_to(base):
        raise SandboxError(f"Path '{relative_path}' escapes the sandbox")

    return resolved
