"""Application configuration using pydantic-settings.

One chain, one settlement token, one operating signer.
"""

from decimal import Decimal
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
        default="sqlite+aiosqlite:///./data/fidg.db",
        description="Ledger database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")
    admin_token: Optional[str] = Field(
        default=None, description="Token for operator endpoints (X-Admin-Token header)"
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Chain
    # ======================
    rpc_url: str = Field(default="https://rpc.sepolia.org", description="Chain JSON-RPC URL")
    chain_id: int = Field(default=11155111, description="EVM chain ID (Sepolia)")
    explorer_tx_url: str = Field(
        default="https://sepolia.etherscan.io/tx/", description="Explorer prefix for tx links"
    )
    operator_private_key: Optional[str] = Field(
        default=None, description="Operating signer key (deploys wallets, funds gas, pays withdrawals)"
    )
    confirmation_timeout: float = Field(
        default=120.0, description="Seconds to wait for a transaction receipt"
    )
    confirmation_poll_interval: float = Field(
        default=2.0, description="Seconds between receipt polls"
    )

    # ======================
    # Settlement asset
    # ======================
    token_address: str = Field(default="", description="Settlement token (ERC-20) contract")
    currency: str = Field(default="EURe", description="Currency label written to the ledger")
    savings_vehicle_address: str = Field(
        default="0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
        description="Savings vehicle destination for invest",
    )

    # ======================
    # Safe (multisig) contracts, v1.4.1 canonical deployments
    # ======================
    safe_proxy_factory_address: str = Field(
        default="0x4e1DCf7AD4e460CfD30791CCC4F9c8a4f820ec67", description="SafeProxyFactory"
    )
    safe_singleton_address: str = Field(
        default="0x29fcB43b46531BcA003ddC8FCB67FFE91900C762", description="SafeL2 singleton"
    )
    safe_fallback_handler_address: str = Field(
        default="0xfd0732Dc9E303f09fCEf3a7388Ad10A83459Ec99",
        description="CompatibilityFallbackHandler",
    )
    deployment_gas_limit: int = Field(default=2_000_000, description="Gas limit for wallet deployment")
    gas_funding_amount: Decimal = Field(
        default=Decimal("0.01"), description="Native currency sent to each new owner key"
    )

    # ======================
    # Custody / accounts
    # ======================
    encryption_key: Optional[str] = Field(
        default=None, description="Custody secret: 32 raw characters or 64 hex characters"
    )
    min_password_length: int = Field(default=6, description="Minimum sign-up password length")

    # ======================
    # Monerium
    # ======================
    monerium_api_url: str = Field(
        default="https://api.monerium.dev", description="Monerium API base URL"
    )
    monerium_client_id: str = Field(default="", description="Monerium client-credentials id")
    monerium_client_secret: str = Field(default="", description="Monerium client-credentials secret")
    monerium_chain: str = Field(default="sepolia", description="Chain name used in Monerium balance lookups")
    monerium_timeout: float = Field(default=30.0, description="Monerium request timeout in seconds")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_operator(self) -> bool:
        """Check if the operating signer is configured."""
        return bool(self.operator_private_key)

    def explorer_link(self, tx_hash: Optional[str]) -> Optional[str]:
        """Build an explorer URL for a transaction hash."""
        if not tx_hash:
            return None
        return f"{self.explorer_tx_url}{tx_hash}"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "admin_token": "***" if self.admin_token else "(not set)",
            "database_url": self._redact_url(self.database_url),
            "chain": {
                "rpc": self._redact_url(self.rpc_url),
                "chain_id": self.chain_id,
                "operator_key": "***" if self.operator_private_key else "(not set)",
                "confirmation_timeout": self.confirmation_timeout,
            },
            "asset": {
                "token": self.token_address or "(not set)",
                "currency": self.currency,
                "savings_vehicle": self.savings_vehicle_address,
            },
            "safe": {
                "proxy_factory": self.safe_proxy_factory_address,
                "singleton": self.safe_singleton_address,
                "fallback_handler": self.safe_fallback_handler_address,
            },
            "custody": {
                "encryption_key": "***" if self.encryption_key else "(not set)",
            },
            "monerium": {
                "api": self.monerium_api_url,
                "client_id": self.monerium_client_id or "(not set)",
                "client_secret": "***" if self.monerium_client_secret else "(not set)",
                "chain": self.monerium_chain,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of a URL."""
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
