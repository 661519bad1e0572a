import secrets

from passlib.context import CryptContext

from errors import InvalidHashError, PasswordTooShort

# Argon2id; the encoded hash carries its own parameters, so records hashed
# under older defaults stay verifiable and are flagged for rehash.
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__type="id",
    argon2__memory_cost=64 * 1024,
    argon2__rounds=3,
    argon2__parallelism=2,
    argon2__salt_size=16,
    argon2__digest_size=32,
)

MIN_PASSWORD_LENGTH = 8

SESSION_TOKEN_BYTES = 32
CSRF_TOKEN_BYTES = 24
SHARE_TOKEN_BYTES = 18


def hash_password(password: str) -> str:
    """Hash password with Argon2id. Raises PasswordTooShort for short input."""
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise PasswordTooShort(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    return pwd_context.hash(password)


def verify_password(encoded: str, candidate: str) -> bool:
    """Verify candidate against a stored hash.

    Returns False on mismatch. Raises InvalidHashError when the stored value is
    not a hash this context understands.
    """
    try:
        return pwd_context.verify(candidate, encoded)
    except (ValueError, TypeError) as e:
        raise InvalidHashError(str(e)) from e


def password_needs_rehash(encoded: str) -> bool:
    try:
        return pwd_context.needs_update(encoded)
    except (ValueError, TypeError):
        return False


def dummy_verify() -> None:
    """Burn the same time as a real verify, for unknown usernames."""
    pwd_context.dummy_verify()


def new_token(nbytes: int) -> str:
    """URL-safe random token with nbytes of entropy."""
    if nbytes <= 0:
        raise ValueError("token size must be > 0")
    return secrets.token_urlsafe(nbytes)


def tokens_match(provided: str, expected: str) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
