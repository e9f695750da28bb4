"""
flowops/generators.py - Secure generation of passwords and API keys.

Everything here draws from the operating system CSPRNG via `secrets`. There is
no fallback: if the random source is unavailable the error propagates and the
run aborts before any credential is written.
"""
import secrets
import string

# Alphanumeric only, usable unquoted in URLs and connection strings.
PASSWORD_ALPHABET = string.ascii_letters + string.digits

API_KEY_BYTES = 32


def generate_password(length: int = 32) -> str:
    """Return a random alphanumeric password of exactly `length` characters."""
    if length < 1:
        raise ValueError(f"password length must be positive, got {length}")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_api_key(prefix: str = "sk") -> str:
    """Return `<prefix>_<64 hex chars>`."""
    return f"{prefix}_{secrets.token_hex(API_KEY_BYTES)}"
