"""
积分门控

把任意一次生成包裹在「检查余额 → 执行 → 成功后扣减」事务中：
余额只会在生成完全成功时减少，且恰好减少 cost；任何失败路径余额不变。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Protocol, TypeVar, runtime_checkable

from ..errors import AppError, ErrorCode, LedgerWriteFailed
from ..logging_config import get_logger
from .models import CreditReservation

logger = get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class CreditLedger(Protocol):
    """外部积分账本（SQLite / Supabase 实现）。"""

    def get_balance(self, user_id: str) -> int: ...

    def set_balance(self, user_id: str, balance: int) -> None: ...


@dataclass
class Credited(Generic[T]):
    """门控执行结果：生成值 + 已进入终态的预留记录。"""

    value: T
    reservation: CreditReservation


class CreditGate:
    """积分门控（生成流水线唯一的账本读写入口）"""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    async def balance_of(self, user_id: str) -> int:
        return await asyncio.to_thread(self.ledger.get_balance, user_id)

    async def with_credits(
        self,
        user_id: str,
        cost: int,
        fn: Callable[[], Awaitable[T]],
        action: str = "",
    ) -> Credited[T]:
        """
        在积分门控下执行 fn

        Args:
            user_id: 用户 ID
            cost: 本次消耗积分（> 0）
            fn: 完整生成流程
            action: 用量记录中的动作名

        Raises:
            AppError(CREDITS_INSUFFICIENT): 余额不足，fn 不会被调用
            LedgerWriteFailed: 生成成功但扣减写入失败，异常携带生成结果
        """
        if cost <= 0:
            raise ValueError(f"cost must be positive: {cost}")

        balance = await self.balance_of(user_id)
        if balance < cost:
            logger.info("credits_insufficient", user_id=user_id, balance=balance, cost=cost)
            raise AppError(
                ErrorCode.CREDITS_INSUFFICIENT,
                f"积分不足（当前 {balance}，需要 {cost}）",
                extra={"balance": balance, "required": cost},
            )

        reservation = CreditReservation(user_id=user_id, amount=cost, balance_before=balance)
        logger.debug("credits_reserved", user_id=user_id, balance=balance, cost=cost)

        try:
            value = await fn()
        except BaseException as exc:
            # 包括取消：余额从未被修改，直接进入 refunded
            reservation.refund()
            logger.info(
                "credits_refunded",
                user_id=user_id,
                cost=cost,
                reason=type(exc).__name__,
            )
            raise

        # 写入在线程中执行，取消请求无法中断它：先等写入落定，再确定预留终态
        write = asyncio.ensure_future(asyncio.to_thread(self.ledger.set_balance, user_id, balance - cost))
        cancelled = False
        try:
            await asyncio.wait({write})
        except asyncio.CancelledError:
            cancelled = True
            await asyncio.wait({write})

        error = write.exception()
        if error is not None:
            reservation.refund()
            logger.error(
                "ledger_write_failed",
                user_id=user_id,
                cost=cost,
                balance=balance,
                cancelled=cancelled,
                error=f"{type(error).__name__}: {error}",
            )
            if cancelled:
                raise asyncio.CancelledError()
            raise LedgerWriteFailed(
                user_id,
                "内容已生成，但积分扣减失败，请联系支持对账",
                value=value,
            ) from error

        reservation.commit()
        logger.info(
            "credits_committed",
            user_id=user_id,
            cost=cost,
            balance_after=reservation.balance_after,
            cancelled=cancelled,
        )
        await self._record_usage(user_id, action, cost)
        if cancelled:
            raise asyncio.CancelledError()
        return Credited(value=value, reservation=reservation)

    async def _record_usage(self, user_id: str, action: str, cost: int) -> None:
        """用量历史仅尽力记录，失败不影响本次结果。"""
        record = getattr(self.ledger, "record_usage", None)
        if record is None or not action:
            return
        try:
            await asyncio.to_thread(record, user_id, action, cost)
        except Exception as exc:
            logger.warning("usage_record_failed", user_id=user_id, action=action, error=str(exc))
