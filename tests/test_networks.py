"""Network configuration, settings and adapter factory tests."""

import pytest

from rbridge.adapters.bitcoin import BitcoinAdapter
from rbridge.adapters.evm import EvmAdapter
from rbridge.adapters.factory import create_adapter
from rbridge.adapters.simulated import SimulatedAdapter
from rbridge.adapters.solana import SolanaAdapter
from rbridge.config import Settings
from rbridge.networks import (
    NETWORKS,
    WRAPPED_ASSETS,
    ChainFamily,
    assets_on_network,
    get_network,
    is_supported_network,
    supported_networks,
    wrapped_symbol,
)


class TestNetworkTable:
    def test_thirteen_networks(self):
        assert len(supported_networks()) == 13
        assert {"bitcoin", "ethereum", "solana", "polygon-zkevm", "opbnb"} <= set(supported_networks())

    @pytest.mark.parametrize(
        "network,confirmations",
        [("bitcoin", 3), ("ethereum", 12), ("bsc", 12), ("base", 12), ("solana", 32)],
    )
    def test_required_confirmations(self, network, confirmations):
        assert get_network(network).required_confirmations == confirmations

    def test_lookup_is_case_insensitive(self):
        assert get_network("Ethereum").network == "ethereum"
        assert is_supported_network("BSC")
        assert not is_supported_network("dogecoin")

    def test_every_evm_network_has_a_distinct_chain_id(self):
        chain_ids = [c.chain_id for c in NETWORKS.values() if c.family == ChainFamily.EVM]

        assert len(chain_ids) == 11
        assert None not in chain_ids
        assert len(set(chain_ids)) == len(chain_ids)

    def test_every_network_has_a_native_wrapped_asset(self):
        for network in supported_networks():
            native = assets_on_network(network)[0]
            assert native.is_native
            assert native.decimals == get_network(network).decimals


class TestWrappedSymbols:
    def test_native_and_token_mapping(self):
        assert wrapped_symbol("bitcoin", "BTC") == "rBTC"
        assert wrapped_symbol("ethereum", "USDT") == "rUSDT"
        assert wrapped_symbol("polygon-zkevm", "zkEVM") == "rzkEVM"

    def test_unknown_asset_raises(self):
        with pytest.raises(KeyError):
            wrapped_symbol("bitcoin", "USDT")

    def test_limits_are_ordered(self):
        for asset in WRAPPED_ASSETS.values():
            assert 0 <= asset.withdrawal_fee < asset.min_withdrawal < asset.max_withdrawal <= asset.velocity_limit


class TestSettings:
    def test_rpc_url_for_hyphenated_network(self):
        settings = Settings(_env_file=None, polygon_zkevm_rpc_url="https://zkevm.example")

        assert settings.get_rpc_url("polygon-zkevm") == "https://zkevm.example"
        assert settings.get_rpc_url("unknown") == ""

    def test_poll_interval_overrides(self):
        settings = Settings(_env_file=None, poll_interval_seconds=30, poll_interval_overrides={"bitcoin": 60})

        assert settings.get_poll_interval("bitcoin") == 60
        assert settings.get_poll_interval("base") == 30

    def test_safe_dict_redacts_secrets(self):
        settings = Settings(
            _env_file=None,
            database_url="postgresql+asyncpg://bridge:hunter2@db/bridge",
            evm_hot_wallet_key="0x" + "11" * 32,
        )

        safe = settings.get_safe_dict()

        assert "hunter2" not in safe["database_url"]
        assert safe["evm_hot_wallet"] == "***"

    def test_production_flag(self):
        assert Settings(_env_file=None, environment="Production").is_production
        assert not Settings(_env_file=None, environment="test").is_production


class TestAdapterFactory:
    def test_dry_run_uses_simulated_chains(self):
        adapter = create_adapter("ethereum", Settings(_env_file=None, dry_run=True))

        assert isinstance(adapter, SimulatedAdapter)
        assert adapter.family == ChainFamily.EVM

    @pytest.mark.parametrize(
        "network,adapter_class",
        [("bitcoin", BitcoinAdapter), ("arbitrum", EvmAdapter), ("polygon-zkevm", EvmAdapter), ("solana", SolanaAdapter)],
    )
    def test_live_adapter_per_family(self, network, adapter_class):
        settings = Settings(_env_file=None, dry_run=False)

        adapter = create_adapter(network, settings)

        assert isinstance(adapter, adapter_class)
        assert adapter.rpc_url == settings.get_rpc_url(network).rstrip("/")
