"""
Supabase 积分账本

通过 PostgREST 读写 ``profiles.credits`` 与 ``usage_history``，使用 service role key
（绕过 RLS）。接口与 CreditStore 一致，由 ``ledger_backend`` 配置选择。
"""

from typing import Any, Optional

import httpx

from ..config import settings
from ..errors import AppError, ErrorCode
from ..logging_config import get_logger

logger = get_logger(__name__)


class SupabaseLedger:
    """Supabase 积分账本（同步 httpx，门控中经 to_thread 调用）。"""

    def __init__(
        self,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.url = (url or settings.supabase_url).rstrip("/")
        self.service_role_key = service_role_key or settings.supabase_service_role_key
        if not self.url or not self.service_role_key:
            raise ValueError("Supabase 未配置，请在 .env 中设置 SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY")

        self._client = client or httpx.Client(timeout=settings.supabase_timeout_seconds)
        self._headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, table: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = self._client.request(
                method,
                f"{self.url}/rest/v1/{table}",
                headers=headers,
                **kwargs,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("supabase_request_failed", method=method, table=table, error=str(exc)[:200])
            raise AppError(
                ErrorCode.LEDGER_UNAVAILABLE,
                f"积分账本不可用: {type(exc).__name__}",
            ) from exc
        return response

    def get_balance(self, user_id: str) -> int:
        response = self._request(
            "GET",
            "profiles",
            params={"id": f"eq.{user_id}", "select": "credits"},
        )
        rows = response.json()
        if not rows:
            raise AppError(
                ErrorCode.CREDITS_ACCOUNT_NOT_FOUND,
                f"账户不存在: {user_id}",
                extra={"user_id": user_id},
            )
        return int(rows[0].get("credits") or 0)

    def set_balance(self, user_id: str, balance: int) -> None:
        response = self._request(
            "PATCH",
            "profiles",
            params={"id": f"eq.{user_id}"},
            json={"credits": int(balance)},
            headers={"Prefer": "return=representation"},
        )
        if not response.json():
            raise AppError(
                ErrorCode.CREDITS_ACCOUNT_NOT_FOUND,
                f"账户不存在: {user_id}",
                extra={"user_id": user_id},
            )

    def record_usage(self, user_id: str, action: str, credits: int) -> None:
        self._request(
            "POST",
            "usage_history",
            json={"user_id": user_id, "action": action, "credits_consumed": int(credits)},
            headers={"Prefer": "return=minimal"},
        )
