"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STREAMTIP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "StreamTip Settlement Core"
    app_version: str = "1.0.0"
    environment: str = "development"
    demo_mode: bool = False

    # Chains
    supported_chains: Dict[int, str] = Field(
        default_factory=lambda: {
            1: "Ethereum Mainnet",
            137: "Polygon Mainnet",
            8453: "Base Mainnet",
            33139: "ApeChain Mainnet",
        }
    )
    destination_chain_id: int = 33139  # ApeChain
    destination_currency: str = "USDC"
    settlement_wallet_address: str = "0x0000000000000000000000000000000000000000"

    # Batching policy
    min_settlement_amount: int = Field(default=10**18, ge=1)  # raw units
    token_thresholds: Dict[str, int] = Field(default_factory=dict)
    max_batch_window_seconds: int = Field(default=30 * 60, ge=1)

    # Revenue split (basis points)
    platform_fee_bps: int = 500
    business_share_bps: int = 7000
    streamer_share_bps: int = 3000

    # Bridge orchestration
    auto_process: bool = True
    external_call_timeout_seconds: float = Field(default=120.0, gt=0)
    bridge_confirmations: int = Field(default=5, ge=0)
    bridge_unhealthy_after_failures: int = Field(default=3, ge=1)

    # Scheduler settings
    scheduler_enabled: bool = True
    scheduler_interval: int = 60  # seconds

    # Tip input limits
    max_message_length: int = 200
    max_address_length: int = 128

    # Queries
    recent_activity_limit: int = 10
    default_settlements_limit: int = 50
    estimated_settlement_time: str = "15-30 minutes"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("token_thresholds")
    @classmethod
    def validate_token_thresholds(cls, v: Dict[str, int]) -> Dict[str, int]:
        for token, threshold in v.items():
            if threshold < 1:
                raise ValueError(f"Threshold for {token} must be positive")
        # Token addresses are compared case-insensitively
        return {token.lower(): threshold for token, threshold in v.items()}

    @model_validator(mode="after")
    def validate_revenue_split(self) -> "Settings":
        if not 0 <= self.platform_fee_bps < 10_000:
            raise ValueError("platform_fee_bps must be in [0, 10000)")
        if self.business_share_bps < 0 or self.streamer_share_bps < 0:
            raise ValueError("Revenue shares must not be negative")
        if self.business_share_bps + self.streamer_share_bps != 10_000:
            raise ValueError("business_share_bps + streamer_share_bps must equal 10000")
        if self.destination_chain_id not in self.supported_chains:
            raise ValueError("destination_chain_id must be a supported chain")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def threshold_for(self, token_address: str) -> int:
        """Minimum raw amount that closes a batch for the given token."""
        return self.token_thresholds.get(token_address.lower(), self.min_settlement_amount)

    def supported_chain_ids(self) -> List[int]:
        return sorted(self.supported_chains)


# Global settings instance
settings = Settings()
