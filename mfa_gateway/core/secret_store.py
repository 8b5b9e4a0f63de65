import logging
import threading
from typing import Dict, Mapping, Optional

from mfa_gateway.core import totp
from mfa_gateway.core.database import get_db, init_db

logger = logging.getLogger(__name__)


def _normalize_secret(secret: str) -> str:
    return "".join(str(secret).split()).upper()


class SecretStore:
    """Username -> base32 TOTP secret, mirrored to SQLite.

    Every ``set``/``delete`` is committed to the database before the
    in-memory mapping changes, so a call that returned was durable.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._secrets: Dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: Optional[str] = None) -> "SecretStore":
        """Create the schema if needed and load every persisted secret."""
        init_db(db_path)
        store = cls(db_path)
        conn = get_db(db_path)
        try:
            rows = conn.execute("SELECT username, totp_secret FROM mfa_secrets").fetchall()
        finally:
            conn.close()
        store._secrets = {row["username"]: row["totp_secret"] for row in rows}
        logger.info(f"Loaded MFA secrets from database for {len(store._secrets)} user(s)")
        return store

    def get(self, username: str) -> Optional[str]:
        return self._secrets.get(username)

    def has(self, username: str) -> bool:
        return username in self._secrets

    def set(self, username: str, secret: str) -> None:
        secret = _normalize_secret(secret)
        if not username:
            raise ValueError("username must not be empty")
        if not totp.is_valid_secret(secret):
            raise ValueError("secret is not valid base32")
        with self._lock:
            conn = get_db(self.db_path)
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO mfa_secrets (username, totp_secret) VALUES (?, ?)",
                    (username, secret),
                )
                conn.commit()
            finally:
                conn.close()
            self._secrets[username] = secret
        logger.info(f"Saved MFA secret for {username}")

    def delete(self, username: str) -> bool:
        """Remove the secret; return whether one existed."""
        with self._lock:
            conn = get_db(self.db_path)
            try:
                cur = conn.execute("DELETE FROM mfa_secrets WHERE username = ?", (username,))
                conn.commit()
                existed_on_disk = cur.rowcount > 0
            finally:
                conn.close()
            existed = self._secrets.pop(username, None) is not None or existed_on_disk
        logger.info(f"Deleted MFA secret for {username} (existed={existed})")
        return existed

    def export(self) -> Dict[str, str]:
        """Plain copy of the mapping for operator backup; accepted by ``load``."""
        with self._lock:
            return dict(self._secrets)

    def load(self, mapping: Mapping[str, str]) -> int:
        """Merge ``mapping`` into the store, persisting each entry.

        Invalid secrets are skipped with a warning. Returns the number loaded.
        """
        loaded = 0
        for username, secret in mapping.items():
            try:
                self.set(username, secret)
            except ValueError as exc:
                logger.warning(f"Skipping MFA secret for {username!r}: {exc}")
                continue
            loaded += 1
        if loaded:
            logger.info(f"Loaded MFA secrets for {loaded} user(s)")
        return loaded

    def usernames(self):
        return sorted(self._secrets)

    def __len__(self):
        return len(self._secrets)
