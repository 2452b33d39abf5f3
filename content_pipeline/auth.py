"""
身份认证

校验 ``Authorization: Bearer <token>`` 并确认 token 所属用户与请求声明的 user_id 一致。

- 未配置任何身份提供方（AUTH_TOKENS 为空且未配置 Supabase）时认证被禁用（开发模式），
  直接信任请求中的 user_id。
- 配置了 Supabase 时通过 ``/auth/v1/user`` 校验 token。
"""

from typing import Optional, Protocol

import httpx

from .config import settings
from .errors import AppError, ErrorCode
from .logging_config import get_logger

logger = get_logger(__name__)


class IdentityProvider(Protocol):
    async def verify_token(self, token: str) -> str:
        """返回 token 所属的 user_id；无效 token 抛出 AUTH_INVALID_TOKEN。"""
        ...


class StaticTokenIdentityProvider:
    """静态 token 表（token -> user_id），适合内网部署与测试。"""

    def __init__(self, tokens: dict[str, str]):
        self.tokens = dict(tokens)

    async def verify_token(self, token: str) -> str:
        user_id = self.tokens.get(token)
        if not user_id:
            raise AppError(ErrorCode.AUTH_INVALID_TOKEN, "认证令牌无效")
        return user_id


class SupabaseIdentityProvider:
    """Supabase Auth：GET /auth/v1/user 取回 token 对应的用户。"""

    def __init__(
        self,
        url: Optional[str] = None,
        anon_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = (url or settings.supabase_url).rstrip("/")
        self.anon_key = anon_key or settings.supabase_anon_key or settings.supabase_service_role_key
        self._client = client or httpx.AsyncClient(timeout=settings.supabase_timeout_seconds)

    async def verify_token(self, token: str) -> str:
        try:
            response = await self._client.get(
                f"{self.url}/auth/v1/user",
                headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("identity_unavailable", error=str(exc)[:200])
            raise AppError(ErrorCode.AUTH_INVALID_TOKEN, "认证服务暂不可用，无法校验令牌") from exc

        if response.status_code != 200:
            raise AppError(ErrorCode.AUTH_INVALID_TOKEN, "认证令牌无效")
        user_id = (response.json() or {}).get("id")
        if not user_id:
            raise AppError(ErrorCode.AUTH_INVALID_TOKEN, "认证令牌无效")
        return str(user_id)


_identity_provider: Optional[IdentityProvider] = None
_identity_configured = False


def get_identity_provider() -> Optional[IdentityProvider]:
    """按配置构造身份提供方；返回 None 表示认证被禁用。"""
    global _identity_provider, _identity_configured
    if not _identity_configured:
        if settings.auth_tokens:
            _identity_provider = StaticTokenIdentityProvider(settings.auth_tokens)
        elif settings.supabase_url and (settings.supabase_anon_key or settings.supabase_service_role_key):
            _identity_provider = SupabaseIdentityProvider()
        _identity_configured = True
    return _identity_provider


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def resolve_user(
    identity: Optional[IdentityProvider],
    authorization: Optional[str],
    claimed_user_id: Optional[str],
) -> str:
    """
    确认请求用户

    Returns:
        通过认证的 user_id

    Raises:
        AppError: 401 缺少 / 无效令牌；403 令牌用户与声明的 user_id 不一致；
            400 认证禁用且未提供 user_id
    """
    if identity is None:
        if not claimed_user_id:
            raise AppError(ErrorCode.INVALID_INPUT, "缺少 userId", extra={"fields": [{"field": "userId"}]})
        return claimed_user_id

    token = _bearer_token(authorization)
    if token is None:
        raise AppError(ErrorCode.AUTH_MISSING_TOKEN, "缺少 Authorization: Bearer 令牌")

    user_id = await identity.verify_token(token)
    if claimed_user_id and claimed_user_id != user_id:
        logger.warning("auth_user_mismatch", token_user=user_id, claimed_user=claimed_user_id)
        raise AppError(ErrorCode.AUTH_USER_MISMATCH, "无权代表其他用户发起请求")
    return user_id
