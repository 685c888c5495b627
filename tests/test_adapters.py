"""Network adapter tests against mocked HTTP endpoints."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest
from eth_utils import to_checksum_address

from rbridge.adapters.base import TxState
from rbridge.adapters.bitcoin import BitcoinAdapter, generate_bitcoin_address, validate_bitcoin_address
from rbridge.adapters.evm import EvmAdapter, encode_transfer, generate_evm_address, validate_evm_address
from rbridge.adapters.simulated import SimulatedAdapter
from rbridge.adapters.solana import SolanaAdapter, generate_solana_address, validate_solana_address
from rbridge.errors import PermanentAdapterError, TransientAdapterError
from rbridge.networks import get_network

BTC_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
EVM_ADDRESS = "0x" + "ab" * 20
SOL_ADDRESS = "11111111111111111111111111111111"
HOT_WALLET_KEY = "0x" + "11" * 32


def rpc_handler(results: dict, errors: dict = None, calls: list = None):
    """Answer JSON-RPC requests from a method -> result table."""
    errors = errors or {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        if calls is not None:
            calls.append(body)
        if method in errors:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": errors[method]})
        result = results[method]
        if callable(result):
            result = result(body["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    return handler


def with_transport(adapter, handler):
    adapter._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return adapter


class TestValidators:
    def test_evm_addresses(self):
        checksummed = to_checksum_address(EVM_ADDRESS)

        assert validate_evm_address(EVM_ADDRESS)
        assert validate_evm_address(checksummed)
        assert not validate_evm_address("0x" + checksummed[2].swapcase() + checksummed[3:])
        assert not validate_evm_address("0x1234")
        assert not validate_evm_address(BTC_ADDRESS)

    def test_bitcoin_addresses(self):
        assert validate_bitcoin_address(BTC_ADDRESS)
        assert validate_bitcoin_address("1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa")
        assert validate_bitcoin_address("3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy")
        assert not validate_bitcoin_address("1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNb")
        assert not validate_bitcoin_address("bc1qinvalid")
        assert not validate_bitcoin_address(EVM_ADDRESS)
        assert not validate_bitcoin_address("")

    def test_solana_addresses(self):
        assert validate_solana_address(SOL_ADDRESS)
        assert not validate_solana_address("0OIl")
        assert not validate_solana_address(EVM_ADDRESS)

    def test_generated_addresses_validate(self):
        assert validate_evm_address(generate_evm_address().address)
        assert validate_bitcoin_address(generate_bitcoin_address().address)
        assert validate_solana_address(generate_solana_address().address)


class TestEvmAdapter:
    """JSON-RPC reads and sends for EVM networks."""

    @pytest.mark.asyncio
    async def test_native_and_token_balances(self):
        usdt_units = hex(250 * 10**6)[2:].rjust(64, "0")
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler({"eth_getBalance": hex(10**18), "eth_call": "0x" + usdt_units}),
        )

        balances = await adapter.get_balances(EVM_ADDRESS)

        assert balances["ETH"] == Decimal("1")
        assert balances["USDT"] == Decimal("250")
        assert set(balances) == {"ETH", "USDT", "USDC"}

    @pytest.mark.asyncio
    async def test_receipt_confirmations(self):
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler(
                {
                    "eth_getTransactionReceipt": {"blockNumber": hex(100), "status": "0x1"},
                    "eth_blockNumber": hex(111),
                }
            ),
        )

        status = await adapter.get_transaction("0xabc")

        assert status.status == TxState.SUCCESS
        assert status.confirmations == 12
        assert status.block_ref == 100

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_failed(self):
        adapter = with_transport(
            EvmAdapter("base", rpc_url="https://rpc.test"),
            rpc_handler(
                {
                    "eth_getTransactionReceipt": {"blockNumber": hex(5), "status": "0x0"},
                    "eth_blockNumber": hex(5),
                }
            ),
        )

        assert (await adapter.get_transaction("0xabc")).status == TxState.FAILED

    @pytest.mark.asyncio
    async def test_pending_and_unknown_transactions(self):
        pending = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": {"hash": "0xabc"}}),
        )
        unknown = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler({"eth_getTransactionReceipt": None, "eth_getTransactionByHash": None}),
        )

        assert (await pending.get_transaction("0xabc")).status == TxState.PENDING
        assert (await unknown.get_transaction("0xabc")).status == TxState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_send_signs_and_broadcasts(self):
        calls = []
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler(
                {
                    "eth_getTransactionCount": "0x7",
                    "eth_gasPrice": hex(20 * 10**9),
                    "eth_sendRawTransaction": "0x" + "f" * 64,
                },
                calls=calls,
            ),
        )

        tx_hash = await adapter.send_native("", EVM_ADDRESS, Decimal("0.5"), HOT_WALLET_KEY)

        assert tx_hash == "0x" + "f" * 64
        raw = calls[-1]["params"][0]
        assert calls[-1]["method"] == "eth_sendRawTransaction"
        assert raw.startswith("0x") and len(raw) > 100

    @pytest.mark.asyncio
    async def test_send_rejection_is_permanent(self):
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler(
                {"eth_getTransactionCount": "0x0", "eth_gasPrice": "0x1"},
                errors={"eth_sendRawTransaction": {"code": -32000, "message": "insufficient funds"}},
            ),
        )

        with pytest.raises(PermanentAdapterError, match="insufficient funds"):
            await adapter.send_native("", EVM_ADDRESS, Decimal("0.5"), HOT_WALLET_KEY)

    @pytest.mark.asyncio
    async def test_send_requires_key_and_valid_destination(self):
        adapter = EvmAdapter("ethereum", rpc_url="https://rpc.test")

        with pytest.raises(PermanentAdapterError):
            await adapter.send_native("", EVM_ADDRESS, Decimal("1"), None)
        with pytest.raises(PermanentAdapterError):
            await adapter.send_native("", "0x1234", Decimal("1"), HOT_WALLET_KEY)

    def test_encode_transfer(self):
        data = encode_transfer(EVM_ADDRESS, 1_000_000)

        assert data.startswith("0xa9059cbb")
        assert data[10:74] == ("ab" * 20).rjust(64, "0")
        assert int(data[74:], 16) == 1_000_000


class TestErrorClassification:
    """Failures are transient or permanent, never raw httpx errors."""

    @pytest.mark.asyncio
    async def test_overloaded_node_is_transient(self):
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            rpc_handler({}, errors={"eth_blockNumber": {"code": -32005, "message": "limit exceeded"}}),
        )

        with pytest.raises(TransientAdapterError):
            await adapter.get_block_height()

    @pytest.mark.parametrize("status_code,error", [(429, TransientAdapterError), (502, TransientAdapterError), (403, PermanentAdapterError)])
    @pytest.mark.asyncio
    async def test_http_status(self, status_code, error):
        adapter = with_transport(
            EvmAdapter("ethereum", rpc_url="https://rpc.test"),
            lambda request: httpx.Response(status_code, text="nope"),
        )

        with pytest.raises(error):
            await adapter.get_block_height()

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = with_transport(EvmAdapter("ethereum", rpc_url="https://rpc.test"), refuse)

        with pytest.raises(TransientAdapterError):
            await adapter.get_balance(EVM_ADDRESS)

    @pytest.mark.asyncio
    async def test_unknown_asset_is_permanent(self):
        adapter = EvmAdapter("ethereum", rpc_url="https://rpc.test")

        with pytest.raises(PermanentAdapterError):
            await adapter.get_balance(EVM_ADDRESS, "DOGE")


class TestBitcoinAdapter:
    """Esplora reads and Bitcoin Core sends."""

    @staticmethod
    def esplora(routes: dict):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path.removeprefix("/api")
            if path not in routes:
                return httpx.Response(404, text="Transaction not found")
            body = routes[path]
            if isinstance(body, str):
                return httpx.Response(200, text=body)
            return httpx.Response(200, json=body)

        return handler

    @pytest.mark.asyncio
    async def test_balance_includes_mempool(self):
        adapter = with_transport(
            BitcoinAdapter("bitcoin", rpc_url="https://esplora.test/api"),
            self.esplora(
                {
                    f"/address/{BTC_ADDRESS}": {
                        "chain_stats": {"funded_txo_sum": 150000, "spent_txo_sum": 50000},
                        "mempool_stats": {"funded_txo_sum": 10000, "spent_txo_sum": 0},
                    }
                }
            ),
        )

        assert await adapter.get_balance(BTC_ADDRESS) == Decimal("0.0011")

    @pytest.mark.asyncio
    async def test_list_incoming_transfers(self):
        txs = [
            {
                "txid": "confirmed",
                "vin": [{"prevout": {"scriptpubkey_address": "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"}}],
                "vout": [
                    {"scriptpubkey_address": BTC_ADDRESS, "value": 50000},
                    {"scriptpubkey_address": "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa", "value": 1000},
                ],
                "status": {"confirmed": True, "block_height": 103},
            },
            {
                "txid": "mempool",
                "vin": [],
                "vout": [{"scriptpubkey_address": BTC_ADDRESS, "value": 25000}],
                "status": {"confirmed": False},
            },
            {
                "txid": "outgoing",
                "vin": [{"prevout": {"scriptpubkey_address": BTC_ADDRESS}}],
                "vout": [{"scriptpubkey_address": BTC_ADDRESS, "value": 100}],
                "status": {"confirmed": True, "block_height": 100},
            },
        ]
        adapter = with_transport(
            BitcoinAdapter("bitcoin", rpc_url="https://esplora.test/api"),
            self.esplora({f"/address/{BTC_ADDRESS}/txs": txs, "/blocks/tip/height": "105"}),
        )

        transfers = await adapter.list_incoming_transfers(BTC_ADDRESS)

        assert [t.tx_hash for t in transfers] == ["confirmed", "mempool"]
        assert transfers[0].amount == Decimal("0.0005")
        assert transfers[0].confirmations == 3
        assert transfers[0].from_address == "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
        assert transfers[1].confirmations == 0
        assert transfers[1].block_number is None

    @pytest.mark.asyncio
    async def test_transaction_status(self):
        adapter = with_transport(
            BitcoinAdapter("bitcoin", rpc_url="https://esplora.test/api"),
            self.esplora(
                {
                    "/tx/mined/status": {"confirmed": True, "block_height": 800000},
                    "/tx/waiting/status": {"confirmed": False},
                    "/blocks/tip/height": "800005",
                }
            ),
        )

        mined = await adapter.get_transaction("mined")
        assert mined.status == TxState.SUCCESS
        assert mined.confirmations == 6
        assert (await adapter.get_transaction("waiting")).status == TxState.PENDING
        assert (await adapter.get_transaction("missing")).status == TxState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_send_through_node_wallet(self):
        calls = []

        def node(request):
            calls.append(json.loads(request.content))
            return httpx.Response(200, json={"result": "b" * 64, "error": None, "id": "rbridge"})

        adapter = with_transport(BitcoinAdapter("bitcoin", node_url="http://node.test"), node)

        txid = await adapter.send_native("", BTC_ADDRESS, Decimal("0.123456789"), None)

        assert txid == "b" * 64
        assert calls[0]["method"] == "sendtoaddress"
        assert calls[0]["params"] == [BTC_ADDRESS, "0.12345679"]

    @pytest.mark.parametrize("code,error", [(-6, PermanentAdapterError), (-28, TransientAdapterError)])
    @pytest.mark.asyncio
    async def test_node_errors_are_classified(self, code, error):
        adapter = with_transport(
            BitcoinAdapter("bitcoin", node_url="http://node.test"),
            lambda request: httpx.Response(
                500, json={"result": None, "error": {"code": code, "message": "node says no"}, "id": "rbridge"}
            ),
        )

        with pytest.raises(error):
            await adapter.send_native("", BTC_ADDRESS, Decimal("0.01"), None)


class TestSolanaAdapter:
    @pytest.mark.asyncio
    async def test_balance_in_lamports(self):
        adapter = with_transport(
            SolanaAdapter("solana", rpc_url="https://sol.test"),
            rpc_handler({"getBalance": {"context": {"slot": 1}, "value": 1_500_000_000}}),
        )

        assert await adapter.get_balance(SOL_ADDRESS) == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_signature_statuses(self):
        def statuses(params):
            signature = params[0][0]
            table = {
                "final": {"slot": 10, "confirmations": None, "err": None, "confirmationStatus": "finalized"},
                "recent": {"slot": 11, "confirmations": 4, "err": None, "confirmationStatus": "confirmed"},
                "broken": {"slot": 12, "confirmations": 1, "err": {"InstructionError": [0, "Custom"]}},
            }
            return {"context": {"slot": 20}, "value": [table.get(signature)]}

        adapter = with_transport(
            SolanaAdapter("solana", rpc_url="https://sol.test"),
            rpc_handler({"getSignatureStatuses": statuses}),
        )

        final = await adapter.get_transaction("final")
        assert final.status == TxState.SUCCESS
        assert final.confirmations == get_network("solana").required_confirmations
        assert (await adapter.get_transaction("recent")).confirmations == 4
        assert (await adapter.get_transaction("broken")).status == TxState.FAILED
        assert (await adapter.get_transaction("gone")).status == TxState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_incoming_transfers(self):
        transaction = {
            "slot": 500,
            "meta": {"err": None, "preBalances": [5_000_000_000, 0], "postBalances": [2_999_995_000, 2_000_000_000]},
            "transaction": {"message": {"accountKeys": [{"pubkey": "SenderKey"}, {"pubkey": SOL_ADDRESS}]}},
        }
        adapter = with_transport(
            SolanaAdapter("solana", rpc_url="https://sol.test"),
            rpc_handler(
                {
                    "getSignaturesForAddress": [
                        {"signature": "good", "err": None},
                        {"signature": "bad", "err": {"InstructionError": [0, "Custom"]}},
                    ],
                    "getTransaction": transaction,
                }
            ),
        )

        transfers = await adapter.list_incoming_transfers(SOL_ADDRESS)

        assert len(transfers) == 1
        assert transfers[0].tx_hash == "good"
        assert transfers[0].amount == Decimal("2")
        assert transfers[0].block_number == 500
        assert transfers[0].from_address == "SenderKey"

    @pytest.mark.asyncio
    async def test_send_requires_custody(self):
        adapter = SolanaAdapter("solana", rpc_url="https://sol.test")

        with pytest.raises(PermanentAdapterError):
            await adapter.send_native("", SOL_ADDRESS, Decimal("1"), None)

    @pytest.mark.asyncio
    async def test_send_via_custody(self):
        requests = []

        def custody(request):
            requests.append(request)
            return httpx.Response(200, json={"signature": "sig123"})

        adapter = with_transport(
            SolanaAdapter("solana", rpc_url="https://sol.test", custody_url="https://custody.test/", custody_token="t0k"),
            custody,
        )

        assert await adapter.send_native("hot", SOL_ADDRESS, Decimal("1.5"), None) == "sig123"
        assert requests[0].url == "https://custody.test/transfers"
        assert requests[0].headers["Authorization"] == "Bearer t0k"
        assert json.loads(requests[0].content)["amount"] == "1.5"


class TestPolling:
    """Balance polling delivers changes and survives handler failures."""

    @pytest.mark.asyncio
    async def test_changes_are_delivered_once(self):
        adapter = SimulatedAdapter("bitcoin")
        snapshots = []

        async def on_change(snapshot):
            snapshots.append(snapshot)

        handle = adapter.poll_address(BTC_ADDRESS, on_change, interval=0.01)
        await asyncio.sleep(0.05)
        adapter.inject_deposit(BTC_ADDRESS, Decimal("0.5"))
        await asyncio.sleep(0.05)
        handle.cancel()
        await handle.wait()

        assert snapshots == [{"BTC": Decimal("0")}, {"BTC": Decimal("0.5")}]
        assert not handle.active

    @pytest.mark.asyncio
    async def test_failed_handler_gets_snapshot_again(self):
        adapter = SimulatedAdapter("bitcoin")
        calls = []

        async def on_change(snapshot):
            calls.append(snapshot)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")

        handle = adapter.poll_address(BTC_ADDRESS, on_change, interval=0.01)
        await asyncio.sleep(0.1)
        handle.cancel()
        await handle.wait()

        assert len(calls) == 2
        assert calls[0] == calls[1]

    @pytest.mark.asyncio
    async def test_transient_error_backs_off_and_recovers(self):
        adapter = SimulatedAdapter("bitcoin", max_backoff=0.02)
        adapter.fail_next(count=2)
        snapshots = []

        async def on_change(snapshot):
            snapshots.append(snapshot)

        handle = adapter.poll_address(BTC_ADDRESS, on_change, interval=0.01)
        await asyncio.sleep(0.15)
        handle.cancel()
        await handle.wait()

        assert snapshots == [{"BTC": Decimal("0")}]

    @pytest.mark.asyncio
    async def test_permanent_error_ends_poll(self):
        adapter = SimulatedAdapter("bitcoin")
        adapter.fail_next(PermanentAdapterError("address rejected", "bitcoin"))

        async def on_change(snapshot):
            pass

        handle = adapter.poll_address(BTC_ADDRESS, on_change, interval=0.01)
        await asyncio.wait_for(handle.wait(), timeout=1)

        assert not handle.active
