"""积分账本存储模块。"""

from ..config import settings
from .credit_store import CreditStore, get_credit_store
from .supabase_ledger import SupabaseLedger


def get_ledger():
    """按 ledger_backend 配置返回账本实现。"""
    if settings.ledger_backend == "supabase":
        return SupabaseLedger()
    return get_credit_store()


__all__ = ["CreditStore", "SupabaseLedger", "get_credit_store", "get_ledger"]
