from pathlib import Path


def resolve_in_workdir(working_directory: str | None, relative: str) -> Path:
    """Resolve ``relative`` against the session directory, refusing to escape it."""
    base = Path(working_directory or Path.cwd()).resolve()
    candidate = (base / relative).resolve()
    if candidate != base and base not in candidate.parents:
        raise ValueError(f"path escapes the working directory: {relative}")
    return candidate
