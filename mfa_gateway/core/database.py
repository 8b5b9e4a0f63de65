import os
import sqlite3
import logging
from typing import Optional

from mfa_gateway.core import config

logger = logging.getLogger(__name__)


def _resolve(db_path: Optional[str]) -> str:
    return db_path or config.AUTH_DB_PATH


def init_db(db_path: Optional[str] = None):
    """Initialize or migrate SQLite database."""
    path = _resolve(db_path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path)
    c = conn.cursor()

    # MFA secrets: one confirmed TOTP secret per username
    c.execute('''
        CREATE TABLE IF NOT EXISTS mfa_secrets (
            username TEXT PRIMARY KEY,
            totp_secret TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Audit log table: security audit trail
    c.execute('''
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT,
            action TEXT NOT NULL,
            status TEXT,
            ip_address TEXT,
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    c.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_username ON audit_log(username)")
    conn.commit()
    conn.close()
    logger.info(f"Database initialized at {path}")


def get_db(db_path: Optional[str] = None):
    """Get database connection."""
    conn = sqlite3.connect(_resolve(db_path))
    conn.row_factory = sqlite3.Row
    return conn
