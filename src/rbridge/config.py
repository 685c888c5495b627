"""Application configuration using pydantic-settings.

Per-network chain constants (decimals, required confirmations, families) are
not settings; they live in ``rbridge.networks``.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/rbridge.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Safety
    # ======================
    dry_run: bool = Field(
        default=True, description="Use simulated network adapters (no real RPC calls)"
    )
    master_key: Optional[str] = Field(
        default=None, description="Fernet key encrypting deposit address secrets"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    bitcoin_rpc_url: str = Field(
        default="https://blockstream.info/api", description="Esplora API for Bitcoin reads"
    )
    bitcoin_node_url: str = Field(
        default="http://127.0.0.1:8332", description="Bitcoin Core JSON-RPC (wallet sends)"
    )
    bitcoin_rpc_user: str = Field(default="", description="Bitcoin Core RPC user")
    bitcoin_rpc_password: str = Field(default="", description="Bitcoin Core RPC password")
    ethereum_rpc_url: str = Field(default="https://eth.llamarpc.com", description="Ethereum RPC URL")
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org", description="BSC RPC URL")
    avalanche_rpc_url: str = Field(
        default="https://api.avax.network/ext/bc/C/rpc", description="Avalanche C-Chain RPC URL"
    )
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", description="Polygon RPC URL")
    arbitrum_rpc_url: str = Field(default="https://arb1.arbitrum.io/rpc", description="Arbitrum RPC URL")
    fantom_rpc_url: str = Field(default="https://rpc.fantom.network", description="Fantom RPC URL")
    linea_rpc_url: str = Field(default="https://rpc.linea.build", description="Linea RPC URL")
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    unichain_rpc_url: str = Field(default="https://mainnet.unichain.org", description="Unichain RPC URL")
    opbnb_rpc_url: str = Field(default="https://opbnb-mainnet-rpc.bnbchain.org", description="opBNB RPC URL")
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC URL")
    polygon_zkevm_rpc_url: str = Field(default="https://zkevm-rpc.com", description="Polygon zkEVM RPC URL")
    solana_custody_url: str = Field(
        default="", description="Custody vendor API that signs and submits Solana transfers"
    )
    solana_custody_token: str = Field(default="", description="Custody vendor API token")

    # ======================
    # Hot wallets (withdrawal source)
    # ======================
    evm_hot_wallet_key: Optional[str] = Field(
        default=None, description="Private key of the EVM hot wallet"
    )
    solana_hot_wallet_address: str = Field(default="", description="Solana hot wallet address")
    bitcoin_hot_wallet_address: str = Field(default="", description="Bitcoin hot wallet address")

    # ======================
    # Monitoring
    # ======================
    poll_interval_seconds: float = Field(default=30.0, description="Default address poll interval")
    poll_interval_overrides: dict[str, float] = Field(
        default_factory=lambda: {"bitcoin": 60.0, "solana": 15.0},
        description="Per-network poll interval overrides (JSON map)",
    )
    confirmation_poll_seconds: float = Field(
        default=15.0, description="Interval between confirmation checks of a pending deposit"
    )
    max_backoff_seconds: float = Field(default=600.0, description="Cap for poll backoff")
    deposit_monitoring_hours: float = Field(
        default=24.0, description="Flag a pending deposit for manual review after this long"
    )
    deposit_dedup_window_seconds: int = Field(
        default=120, description="Balance-delta duplicate suppression window"
    )
    rpc_timeout_seconds: float = Field(default=20.0, description="Timeout for a single RPC call")
    network_status_interval_seconds: float = Field(
        default=60.0, description="Interval between network status refreshes"
    )

    # ======================
    # Withdrawals
    # ======================
    withdrawal_velocity_window_minutes: int = Field(
        default=60, description="Window for the per-user withdrawal velocity limit"
    )

    # ======================
    # Trading engine
    # ======================
    trading_engine_url: str = Field(
        default="", description="Trading engine base URL (empty = in-process balances)"
    )
    trading_engine_token: str = Field(default="", description="Trading engine API token")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, network: str) -> str:
        """Get RPC URL for a network identifier."""
        field_name = f"{network.lower().replace('-', '_')}_rpc_url"
        return getattr(self, field_name, "")

    def get_poll_interval(self, network: str) -> float:
        """Poll interval for a network, honouring overrides."""
        return self.poll_interval_overrides.get(network, self.poll_interval_seconds)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "master_key": "***" if self.master_key else "(not set)",
            "evm_hot_wallet": "***" if self.evm_hot_wallet_key else "(not set)",
            "trading_engine": self.trading_engine_url or "(in-process)",
            "monitoring": {
                "poll_interval_seconds": self.poll_interval_seconds,
                "poll_interval_overrides": self.poll_interval_overrides,
                "confirmation_poll_seconds": self.confirmation_poll_seconds,
                "deposit_monitoring_hours": self.deposit_monitoring_hours,
                "rpc_timeout_seconds": self.rpc_timeout_seconds,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
