"""积分账本 SQLite 存储。"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..config import settings
from ..errors import AppError, ErrorCode
from ..logging_config import get_logger

logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now().isoformat()


class CreditStore:
    """积分账本（SQLite）。"""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = settings.credit_db_file
        if db_path is not None:
            self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=5.0
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    user_id TEXT PRIMARY KEY,
                    credits INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS usage_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    credits_consumed INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_usage_history_user_id
                ON usage_history(user_id);
                """
            )

    def get_balance(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT credits FROM profiles WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            raise AppError(
                ErrorCode.CREDITS_ACCOUNT_NOT_FOUND,
                f"账户不存在: {user_id}",
                extra={"user_id": user_id},
            )
        return int(row["credits"])

    def set_balance(self, user_id: str, balance: int) -> None:
        """行级 UPDATE；账户不存在时报错而不是隐式创建。"""
        if balance < 0:
            raise ValueError(f"balance must not be negative: {balance}")
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE profiles SET credits = ?, updated_at = ? WHERE user_id = ?",
                (int(balance), _now_iso(), user_id),
            )
        if cursor.rowcount == 0:
            raise AppError(
                ErrorCode.CREDITS_ACCOUNT_NOT_FOUND,
                f"账户不存在: {user_id}",
                extra={"user_id": user_id},
            )

    def upsert_account(self, user_id: str, credits: int) -> None:
        """创建账户或重置余额（开通 / 充值 / 测试数据）。"""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO profiles (user_id, credits, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    credits = excluded.credits,
                    updated_at = excluded.updated_at
                """,
                (user_id, int(credits), _now_iso()),
            )
        logger.info("credit_account_upserted", user_id=user_id, credits=credits)

    def record_usage(self, user_id: str, action: str, credits: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO usage_history (user_id, action, credits_consumed, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, action, int(credits), _now_iso()),
            )

    def list_usage(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT action, credits_consumed, created_at
                FROM usage_history
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, int(limit)),
            ).fetchall()
        return [
            {
                "action": row["action"],
                "credits_consumed": row["credits_consumed"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]


_credit_store: Optional[CreditStore] = None


def get_credit_store() -> CreditStore:
    global _credit_store
    if _credit_store is None:
        _credit_store = CreditStore()
    return _credit_store
