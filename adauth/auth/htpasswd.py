"""Local credential store backed by a bcrypt htpasswd file."""

import asyncio
import os
import tempfile
from pathlib import Path

import bcrypt
import structlog

from .models import BackendError

logger = structlog.get_logger()

# bcrypt only looks at the first 72 bytes of a password
BCRYPT_MAX_PASSWORD_BYTES = 72


def password_too_long(password: str) -> bool:
    return len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES


def hash_password(password: str, rounds: int = 10) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against a bcrypt hash; False for foreign hash formats."""
    if password_too_long(password):
        logger.debug("Password exceeds bcrypt length limit")
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Unsupported password hash in htpasswd file")
        return False


def parse_htpasswd(text: str) -> dict[str, str]:
    """Parse user:hash lines, skipping blanks and comments."""
    users: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        user, hashed = line.split(":", 1)
        users[user] = hashed.split(":", 1)[0]
    return users


class HtpasswdBackend:
    """Fallback backend reading and appending to an htpasswd file.

    The file is re-read whenever its modification time changes, so accounts
    added by other processes are picked up without a restart.
    """

    def __init__(self, path: str, rounds: int = 10):
        self.path = Path(path)
        self.rounds = rounds
        self._users: dict[str, str] = {}
        self._mtime: float | None = None
        self._lock = asyncio.Lock()

    def _reload(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            self._users, self._mtime = {}, None
            return

        if mtime == self._mtime:
            return
        self._users = parse_htpasswd(self.path.read_text(encoding="utf-8"))
        self._mtime = mtime
        logger.debug("htpasswd file loaded", path=str(self.path), users=len(self._users))

    def _write(self, user: str, hashed: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        existing = self.path.read_text(encoding="utf-8") if self.path.exists() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"

        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{existing}{user}:{hashed}\n")
            os.replace(tmp, self.path)
        except OSError:
            os.unlink(tmp)
            raise
        self._users[user] = hashed
        self._mtime = self.path.stat().st_mtime

    async def authenticate(self, user: str, password: str) -> bool:
        """Verify user's password; False for unknown users."""
        try:
            await asyncio.to_thread(self._reload)
        except OSError as e:
            raise BackendError(f"Cannot read {self.path}: {e}", code="EIO") from e

        hashed = self._users.get(user)
        if hashed is None:
            logger.debug("User not found in htpasswd file", username=user)
            return False
        return await asyncio.to_thread(verify_password, password, hashed)

    async def add_user(self, user: str, password: str) -> bool:
        """Append user to the file.

        Raises:
            BackendError: EINVAL for unusable names, empty passwords or
                passwords longer than bcrypt accepts, EEXIST when
                the user is already present, EIO when the file cannot be written.
        """
        if not user or any(c in user for c in ":\r\n"):
            raise BackendError(f"Invalid username: {user!r}", code="EINVAL", status_code=400)
        if not password:
            raise BackendError("Password must not be empty", code="EINVAL", status_code=400)
        if password_too_long(password):
            raise BackendError(
                f"Password must not exceed {BCRYPT_MAX_PASSWORD_BYTES} bytes",
                code="EINVAL",
                status_code=400,
            )

        async with self._lock:
            try:
                await asyncio.to_thread(self._reload)
                if user in self._users:
                    raise BackendError(
                        "this user already exists", code="EEXIST", status_code=409
                    )
                hashed = await asyncio.to_thread(hash_password, password, self.rounds)
                await asyncio.to_thread(self._write, user, hashed)
            except OSError as e:
                raise BackendError(f"Cannot write {self.path}: {e}", code="EIO") from e

        logger.info("User added to htpasswd file", username=user, path=str(self.path))
        return True
