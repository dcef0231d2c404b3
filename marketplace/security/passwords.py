from pwdlib import PasswordHash


hasher = PasswordHash.recommended()

# Verified against when the username is unknown so both paths cost one hash check.
_UNKNOWN_USER_HASH = hasher.hash('marketplace-unknown-user')


def hash_password(raw_password: str) -> str:
    return hasher.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str | None) -> bool:
    return hasher.verify(raw_password, hashed_password or _UNKNOWN_USER_HASH)


def verify_and_upgrade(raw_password: str, hashed_password: str) -> tuple[bool, str | None]:
    """Check a password and return a fresh hash when the stored one uses outdated parameters."""
    return hasher.verify_and_update(raw_password, hashed_password)
