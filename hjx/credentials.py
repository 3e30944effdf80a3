import os
from pathlib import Path
from dotenv import dotenv_values, set_key

HJX_CREDENTIALS_FILE = Path.home() / ".hjx" / "credentials"


def load_credentials():
    """Load hjx's credentials from ~/.hjx/credentials into os.environ.

    Holds keys for the optional integrations (reviewer model API key, AWS keys
    for S3 storage) so users don't have to export env vars every session.
    Format: KEY=VALUE, one per line. Existing environment variables win.
    """
    if not HJX_CREDENTIALS_FILE.exists():
        return {}

    creds = {k: v for k, v in dotenv_values(HJX_CREDENTIALS_FILE).items() if v is not None}
    for key, value in creds.items():
        if key not in os.environ:
            os.environ[key] = value
    return creds


def save_credential(key, value):
    """Save or update a single credential in ~/.hjx/credentials."""
    HJX_CREDENTIALS_FILE.parent.mkdir(parents=True, exist_ok=True)
    HJX_CREDENTIALS_FILE.parent.chmod(0o700)
    HJX_CREDENTIALS_FILE.touch(mode=0o600, exist_ok=True)

    set_key(HJX_CREDENTIALS_FILE, key, value, quote_mode="never")
    # set_key rewrites through a temp file, so the mode is reapplied afterwards
    HJX_CREDENTIALS_FILE.chmod(0o600)
    os.environ[key] = value
