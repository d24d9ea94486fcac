import re
import secrets
import string

from ephemeral_sql.db import MAX_IDENTIFIER_LENGTH, split_database_url, truncate_identifier

SUFFIX_LENGTH = 16
ALPHABET = string.ascii_letters + string.digits
SUFFIX_SEPARATOR = "_"

# Room left for the base name once separator and suffix are appended
MAX_BASE_LENGTH = MAX_IDENTIFIER_LENGTH - len(SUFFIX_SEPARATOR) - SUFFIX_LENGTH


def generate_suffix(length: int = SUFFIX_LENGTH) -> str:
    """
    Generate a random alphanumeric token.

    Args:
        length (int): Number of characters in the token

    Returns:
        str: Token drawn from ALPHABET using the OS randomness source
    """
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def name_prefix(base_name: str) -> str:
    """Leading part shared by every name generated from base_name.

    Long base names are shortened so the generated name fits in
    MAX_IDENTIFIER_LENGTH bytes and the server never truncates it.
    """
    return truncate_identifier(base_name, MAX_BASE_LENGTH) + SUFFIX_SEPARATOR


def generate_database_url(database_url: str) -> str:
    """
    Derive a unique connection string from a base one.

    The trailing database name gets a random suffix so concurrent test
    processes sharing one server never pick the same name.

    Args:
        database_url (str): Base connection string, e.g. postgresql://user@host/app

    Returns:
        str: e.g. postgresql://user@host/app_Xq3v9LkT0aBcDeF1
    """
    if not database_url:
        raise ValueError("Base database URL must not be empty")
    server_endpoint, base_name = split_database_url(database_url)
    return f"{server_endpoint}{name_prefix(base_name)}{generate_suffix()}"


def is_generated_name(base_name: str, candidate: str) -> bool:
    """Check whether candidate looks like a name generated from base_name."""
    pattern = re.escape(name_prefix(base_name)) + f"[A-Za-z0-9]{{{SUFFIX_LENGTH}}}"
    return re.fullmatch(pattern, candidate) is not None
