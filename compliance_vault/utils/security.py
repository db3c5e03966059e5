import secrets


def generate_token() -> str:
    return secrets.token_hex(32)


def generate_stored_filename(version: int, extension: str) -> str:
    """Random on-disk name; carries no trace of the original name or content."""
    suffix = f".{extension}" if extension else ""
    return f"v{version}_{secrets.token_hex(16)}{suffix}"
