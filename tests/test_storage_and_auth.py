from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from content_pipeline.auth import SupabaseIdentityProvider, StaticTokenIdentityProvider, resolve_user
from content_pipeline.errors import AppError, ErrorCode
from content_pipeline.pipeline.credit_gate import CreditGate
from content_pipeline.storage import CreditStore, SupabaseLedger


def test_credit_store_balance_roundtrip(tmp_path) -> None:
    store = CreditStore(db_path=tmp_path / "credits.db")
    store.upsert_account("u1", 10)

    assert store.get_balance("u1") == 10
    store.set_balance("u1", 7)
    assert store.get_balance("u1") == 7

    store.upsert_account("u1", 20)
    assert store.get_balance("u1") == 20


def test_credit_store_unknown_account(tmp_path) -> None:
    store = CreditStore(db_path=tmp_path / "credits.db")

    with pytest.raises(AppError) as exc_info:
        store.get_balance("ghost")
    assert exc_info.value.code == ErrorCode.CREDITS_ACCOUNT_NOT_FOUND

    with pytest.raises(AppError) as exc_info:
        store.set_balance("ghost", 3)
    assert exc_info.value.code == ErrorCode.CREDITS_ACCOUNT_NOT_FOUND


def test_credit_store_rejects_negative_balance(tmp_path) -> None:
    store = CreditStore(db_path=tmp_path / "credits.db")
    store.upsert_account("u1", 1)

    with pytest.raises(ValueError):
        store.set_balance("u1", -1)
    assert store.get_balance("u1") == 1


def test_credit_store_usage_history_newest_first(tmp_path) -> None:
    store = CreditStore(db_path=tmp_path / "credits.db")
    store.record_usage("u1", "generate_short_form", 2)
    store.record_usage("u1", "generate_titles", 1)
    store.record_usage("u2", "generate_images", 3)

    history = store.list_usage("u1")

    assert [(item["action"], item["credits_consumed"]) for item in history] == [
        ("generate_titles", 1),
        ("generate_short_form", 2),
    ]
    assert store.list_usage("u1", limit=1)[0]["action"] == "generate_titles"


def test_credit_gate_over_sqlite_store(tmp_path) -> None:
    store = CreditStore(db_path=tmp_path / "credits.db")
    store.upsert_account("u1", 5)
    gate = CreditGate(store)

    async def work() -> str:
        return "ok"

    credited = asyncio.run(gate.with_credits("u1", 3, work, action="generate_images"))

    assert credited.reservation.balance_after == 2
    assert store.get_balance("u1") == 2
    assert store.list_usage("u1")[0]["action"] == "generate_images"


class _SupabaseFake:
    """用 MockTransport 模拟 PostgREST 的 profiles / usage_history 表。"""

    def __init__(self, balances: dict[str, int]):
        self.balances = dict(balances)
        self.usage: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.down = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            return httpx.Response(503, json={"message": "unavailable"})
        table = request.url.path.rsplit("/", 1)[-1]
        user_id = request.url.params.get("id", "").removeprefix("eq.")
        if table == "profiles" and request.method == "GET":
            rows = [{"credits": self.balances[user_id]}] if user_id in self.balances else []
            return httpx.Response(200, json=rows)
        if table == "profiles" and request.method == "PATCH":
            if user_id not in self.balances:
                return httpx.Response(200, json=[])
            self.balances[user_id] = json.loads(request.content)["credits"]
            return httpx.Response(200, json=[{"id": user_id, "credits": self.balances[user_id]}])
        if table == "usage_history" and request.method == "POST":
            self.usage.append(json.loads(request.content))
            return httpx.Response(201)
        return httpx.Response(404)


def _supabase_ledger(fake: _SupabaseFake) -> SupabaseLedger:
    return SupabaseLedger(
        url="https://project.supabase.test/",
        service_role_key="service-key",
        client=httpx.Client(transport=httpx.MockTransport(fake)),
    )


def test_supabase_ledger_reads_and_writes_profiles() -> None:
    fake = _SupabaseFake({"u1": 10})
    ledger = _supabase_ledger(fake)

    assert ledger.get_balance("u1") == 10
    ledger.set_balance("u1", 8)
    ledger.record_usage("u1", "generate_short_form", 2)

    assert fake.balances["u1"] == 8
    assert fake.usage == [{"user_id": "u1", "action": "generate_short_form", "credits_consumed": 2}]
    first = fake.requests[0]
    assert str(first.url).startswith("https://project.supabase.test/rest/v1/profiles")
    assert first.headers["apikey"] == "service-key"
    assert first.headers["Authorization"] == "Bearer service-key"
    assert fake.requests[1].headers["Prefer"] == "return=representation"


def test_supabase_ledger_missing_account_and_outage() -> None:
    fake = _SupabaseFake({})
    ledger = _supabase_ledger(fake)

    with pytest.raises(AppError) as exc_info:
        ledger.get_balance("ghost")
    assert exc_info.value.code == ErrorCode.CREDITS_ACCOUNT_NOT_FOUND

    with pytest.raises(AppError) as exc_info:
        ledger.set_balance("ghost", 1)
    assert exc_info.value.code == ErrorCode.CREDITS_ACCOUNT_NOT_FOUND

    fake.down = True
    with pytest.raises(AppError) as exc_info:
        ledger.get_balance("ghost")
    assert exc_info.value.code == ErrorCode.LEDGER_UNAVAILABLE


def test_supabase_ledger_requires_configuration() -> None:
    with pytest.raises(ValueError):
        SupabaseLedger(url="https://project.supabase.test", service_role_key="", client=httpx.Client())


def test_supabase_identity_verifies_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/v1/user"
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"id": "u1", "email": "u1@example.com"})
        return httpx.Response(401, json={"message": "invalid JWT"})

    identity = SupabaseIdentityProvider(
        url="https://project.supabase.test",
        anon_key="anon-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    assert asyncio.run(identity.verify_token("good")) == "u1"
    with pytest.raises(AppError) as exc_info:
        asyncio.run(identity.verify_token("bad"))
    assert exc_info.value.code == ErrorCode.AUTH_INVALID_TOKEN


@pytest.mark.parametrize(
    "authorization,claimed,code",
    [
        (None, "u1", ErrorCode.AUTH_MISSING_TOKEN),
        ("Basic abc", "u1", ErrorCode.AUTH_MISSING_TOKEN),
        ("Bearer nope", "u1", ErrorCode.AUTH_INVALID_TOKEN),
        ("Bearer t1", "u2", ErrorCode.AUTH_USER_MISMATCH),
    ],
)
def test_resolve_user_rejections(authorization: str | None, claimed: str, code: ErrorCode) -> None:
    identity = StaticTokenIdentityProvider({"t1": "u1"})

    with pytest.raises(AppError) as exc_info:
        asyncio.run(resolve_user(identity, authorization, claimed))
    assert exc_info.value.code == code


def test_resolve_user_accepts_matching_token_and_dev_mode() -> None:
    identity = StaticTokenIdentityProvider({"t1": "u1"})

    assert asyncio.run(resolve_user(identity, "Bearer t1", "u1")) == "u1"
    assert asyncio.run(resolve_user(identity, "bearer t1", None)) == "u1"
    assert asyncio.run(resolve_user(None, None, "u9")) == "u9"
    with pytest.raises(AppError) as exc_info:
        asyncio.run(resolve_user(None, None, None))
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
