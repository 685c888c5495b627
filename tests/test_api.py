"""HTTP API tests."""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from rbridge.api.app import create_app
from rbridge.config import Settings
from rbridge.ledger.database import get_db
from rbridge.ledger.wrapped import WrappedAssetLedger
from rbridge.networks import supported_networks

BTC_DEST = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest_asyncio.fixture
async def client(bridge):
    app = create_app(bridge)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "rbridge"}

    @pytest.mark.asyncio
    async def test_detailed_health_redacts_secrets(self, client):
        response = await client.get("/health/detailed")

        data = response.json()
        assert data["status"] == "healthy"
        assert "monitors" in data
        assert data["config"]["environment"] == "test"
        assert "evm_hot_wallet_key" not in data["config"]


class TestDepositAddresses:
    @pytest.mark.asyncio
    async def test_same_address_on_repeat_request(self, client):
        first = await client.post("/deposit-address", json={"user_id": "alice", "network": "Bitcoin"})
        second = await client.post("/deposit-address", json={"user_id": "alice", "network": "bitcoin"})

        assert first.status_code == 200
        assert first.json()["network"] == "bitcoin"
        assert first.json()["address"] == second.json()["address"]

    @pytest.mark.asyncio
    async def test_unsupported_network_is_400(self, client):
        response = await client.post("/deposit-address", json={"user_id": "alice", "network": "dogecoin"})

        assert response.status_code == 400
        assert "dogecoin" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_list_user_addresses(self, client):
        await client.post("/deposit-address", json={"user_id": "bob", "network": "ethereum"})
        await client.post("/deposit-address", json={"user_id": "bob", "network": "solana"})

        response = await client.get("/deposit-addresses", params={"user_id": "bob"})

        assert response.status_code == 200
        assert sorted(a["network"] for a in response.json()) == ["ethereum", "solana"]
        assert all(a["is_active"] for a in response.json())

    @pytest.mark.asyncio
    async def test_bulk_issuance_covers_every_network(self, client):
        response = await client.post("/deposit-addresses", json={"user_id": "carol"})

        assert response.status_code == 200
        issued = response.json()
        assert [a["network"] for a in issued] == supported_networks()
        assert all(a["address"] for a in issued)
        listed = await client.get("/deposit-addresses", params={"user_id": "carol"})
        assert len(listed.json()) == len(supported_networks())

    @pytest.mark.asyncio
    async def test_bulk_issuance_of_selected_networks(self, client):
        response = await client.post(
            "/deposit-addresses", json={"user_id": "dave", "networks": ["Bitcoin", "solana"]}
        )

        assert [a["network"] for a in response.json()] == ["bitcoin", "solana"]
        rejected = await client.post(
            "/deposit-addresses", json={"user_id": "dave", "networks": ["bitcoin", "dogecoin"]}
        )
        assert rejected.status_code == 400


class TestDeposits:
    @pytest.mark.asyncio
    async def test_list_is_paginated(self, client, create_address, adapters, bridge, tracked):
        address = "bc1qdeposit0000000000000000000000000000"
        await create_address("alice", "bitcoin", address)
        for _ in range(3):
            adapters["bitcoin"].inject_deposit(address, Decimal("0.01"))
        await bridge.detector.handle_snapshot("bitcoin", address, {"BTC": Decimal("0.03")})

        page = await client.get("/deposits", params={"user_id": "alice", "limit": 2})
        rest = await client.get("/deposits", params={"user_id": "alice", "limit": 2, "offset": 2})

        assert page.json()["total"] == 3
        assert len(page.json()["items"]) == 2
        assert len(rest.json()["items"]) == 1
        assert page.json()["items"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client):
        response = await client.get("/deposits", params={"status": "lost"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_deposit_is_404(self, client):
        assert (await client.get("/deposits/12345")).status_code == 404

    @pytest.mark.asyncio
    async def test_status_by_tx_hash(self, client, create_address, adapters, bridge, tracked):
        address = "bc1qdeposit0000000000000000000000000000"
        await create_address("alice", "bitcoin", address)
        tx_hash = adapters["bitcoin"].inject_deposit(address, Decimal("0.01"))
        await bridge.detector.handle_snapshot("bitcoin", address, {"BTC": Decimal("0.01")})

        response = await client.get(f"/deposits/by-tx/{tx_hash}")

        assert response.status_code == 200
        assert response.json()["tx_hash"] == tx_hash
        assert response.json()["status"] == "pending"
        assert Decimal(response.json()["amount"]) == Decimal("0.01")
        assert (await client.get("/deposits/by-tx/unknown")).status_code == 404


class TestWithdrawals:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client, fund):
        await fund("alice", "rBTC", "1")

        response = await client.post(
            "/withdrawals",
            json={"user_id": "alice", "network": "bitcoin", "symbol": "rBTC", "amount": "0.5", "to_address": BTC_DEST},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        withdrawal_id = response.json()["withdrawal_id"]

        fetched = await client.get(f"/withdrawals/{withdrawal_id}")
        assert fetched.json()["amount"].startswith("0.5")
        assert fetched.json()["fee"].startswith("0.0001")
        listed = await client.get("/withdrawals", params={"user_id": "alice"})
        assert listed.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_rejection_is_400_with_reason(self, client, fund):
        await fund("alice", "rBTC", "0.1")

        response = await client.post(
            "/withdrawals",
            json={"user_id": "alice", "network": "bitcoin", "symbol": "rBTC", "amount": "0.5", "to_address": BTC_DEST},
        )

        assert response.status_code == 400
        assert "Insufficient" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_malformed_amount_is_422(self, client):
        response = await client.post(
            "/withdrawals",
            json={"user_id": "alice", "network": "bitcoin", "symbol": "rBTC", "amount": "lots", "to_address": BTC_DEST},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_pending_then_conflict(self, client, fund, trading):
        await fund("alice", "rBTC", "1")
        created = await client.post(
            "/withdrawals",
            json={"user_id": "alice", "network": "bitcoin", "symbol": "rBTC", "amount": "0.5", "to_address": BTC_DEST},
        )
        withdrawal_id = created.json()["withdrawal_id"]

        cancelled = await client.post(f"/withdrawals/{withdrawal_id}/cancel", json={"user_id": "alice"})
        again = await client.post(f"/withdrawals/{withdrawal_id}/cancel")

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert again.status_code == 409
        assert await trading.get_available_balance("alice", "rBTC") == Decimal("1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_404(self, client):
        assert (await client.post("/withdrawals/999/cancel")).status_code == 404


class TestNetworks:
    @pytest.mark.asyncio
    async def test_network_status_lists_every_network(self, client, bridge):
        before = (await client.get("/network-status")).json()
        await bridge.network_status.refresh()
        after = (await client.get("/network-status")).json()

        assert set(before) == set(supported_networks())
        assert before["bitcoin"]["online"] is False
        assert after["bitcoin"] == {
            "online": True,
            "block_height": 1000,
            "last_checked": after["bitcoin"]["last_checked"],
        }

    @pytest.mark.asyncio
    async def test_networks(self, client):
        networks = (await client.get("/networks")).json()

        assert len(networks) == 13
        bitcoin = next(n for n in networks if n["network"] == "bitcoin")
        assert bitcoin["required_confirmations"] == 3

    @pytest.mark.asyncio
    async def test_wrapped_assets_report_supply(self, client, session_factory):
        async with get_db(session_factory) as session:
            await WrappedAssetLedger(session).mint("rETH", Decimal("2"))

        assets = {a["symbol"]: a for a in (await client.get("/wrapped-assets")).json()}

        assert Decimal(assets["rETH"]["total_supply"]) == Decimal("2")
        assert assets["rUSDT"]["network"] == "ethereum"
        assert assets["rBTC"]["withdrawal_fee"] == "0.0001"


class TestAdmin:
    @pytest.mark.asyncio
    async def test_stats_open_in_development(self, client):
        response = await client.get("/admin/stats")

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["open_alerts"] == 0

    @pytest.mark.asyncio
    async def test_token_required_when_configured(self, client, monkeypatch):
        secured = Settings(_env_file=None, admin_token="s3cret")
        monkeypatch.setattr("rbridge.api.dependencies.get_settings", lambda: secured)

        assert (await client.get("/admin/alerts")).status_code == 401
        ok = await client.get("/admin/alerts", headers={"X-Admin-Token": "s3cret"})
        assert ok.status_code == 200
        assert ok.json() == []

    @pytest.mark.asyncio
    async def test_reconcile_and_resolve_alert(self, client, session_factory):
        async with get_db(session_factory) as session:
            await WrappedAssetLedger(session).mint("rETH", Decimal("2"))

        report = (await client.post("/admin/reconcile")).json()
        alerts = (await client.get("/admin/alerts")).json()

        assert len(report["mismatches"]) == 1
        assert alerts[0]["kind"] == "mint_mismatch"

        resolved = await client.post(f"/admin/alerts/{alerts[0]['id']}/resolve")
        assert resolved.json()["resolved"] is True
        assert (await client.get("/admin/alerts")).json() == []
        assert (await client.post("/admin/alerts/999/resolve")).status_code == 404

    @pytest.mark.asyncio
    async def test_recredit_needs_failed_send(self, client, fund):
        await fund("alice", "rBTC", "1")
        created = await client.post(
            "/withdrawals",
            json={"user_id": "alice", "network": "bitcoin", "symbol": "rBTC", "amount": "0.5", "to_address": BTC_DEST},
        )

        response = await client.post(f"/admin/withdrawals/{created.json()['withdrawal_id']}/recredit")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_resume_tracking(self, client, create_address, adapters, bridge, tracked):
        address = "bc1qdeposit0000000000000000000000000000"
        await create_address("alice", "bitcoin", address)
        adapters["bitcoin"].inject_deposit(address, Decimal("0.01"))
        [deposit] = await bridge.detector.handle_snapshot("bitcoin", address, {"BTC": Decimal("0.01")})

        response = await client.post(f"/admin/deposits/{deposit.id}/resume-tracking")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["tracking_restarted_at"] is not None
        assert tracked == [deposit.id, deposit.id]
        assert (await client.post("/admin/deposits/999/resume-tracking")).status_code == 404

    @pytest.mark.asyncio
    async def test_resume_tracking_of_settled_deposit_is_409(self, client, create_address, adapters, bridge, tracked):
        address = "bc1qdeposit0000000000000000000000000000"
        await create_address("alice", "bitcoin", address)
        adapters["bitcoin"].inject_deposit(address, Decimal("0.01"))
        [deposit] = await bridge.detector.handle_snapshot("bitcoin", address, {"BTC": Decimal("0.01")})
        adapters["bitcoin"].advance_blocks(3)
        await bridge.tracker.check_deposit(deposit.id)

        response = await client.post(f"/admin/deposits/{deposit.id}/resume-tracking")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_activity_statistics(self, client, create_address, adapters, bridge, tracked, fund):
        address = "bc1qdeposit0000000000000000000000000000"
        await create_address("alice", "bitcoin", address)
        adapters["bitcoin"].inject_deposit(address, Decimal("0.1"))
        adapters["bitcoin"].inject_deposit(address, Decimal("0.2"))
        await bridge.detector.handle_snapshot("bitcoin", address, {"BTC": Decimal("0.3")})
        await fund("bob", "rBTC", "1")
        await client.post(
            "/withdrawals",
            json={"user_id": "bob", "network": "bitcoin", "symbol": "rBTC", "amount": "0.5", "to_address": BTC_DEST},
        )

        response = await client.get("/admin/stats/activity", params={"timeframe": "1h"})

        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "1h"
        assert data["deposits"]["count"] == 2
        assert data["deposits"]["unique_users"] == 1
        assert data["deposits"]["by_asset"] == [
            {
                "network": "bitcoin",
                "token_symbol": "BTC",
                "status": "pending",
                "count": 2,
                "total_amount": "0.3",
                "min_amount": "0.1",
                "max_amount": "0.2",
            }
        ]
        assert data["withdrawals"]["count"] == 1
        assert data["withdrawals"]["by_asset"][0]["total_amount"] == "0.5"

    @pytest.mark.asyncio
    async def test_activity_statistics_rejects_unknown_timeframe(self, client):
        response = await client.get("/admin/stats/activity", params={"timeframe": "1y"})

        assert response.status_code == 400
        assert "1y" in response.json()["detail"]
