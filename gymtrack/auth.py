import bcrypt


def _password_bytes(password: str) -> bytes:
    # bcrypt only looks at 72 bytes; newer releases refuse anything longer
    return password.encode("utf-8")[:72]


def hash_password(password: str, rounds: int = 12) -> str:
    """Salted bcrypt hash, decoded so it fits a TEXT column."""
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")
