#!/usr/bin/env python3
"""Configuration management for the SPL provisioner.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables (and a local .env file
if present) with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import ClassVar
from urllib.parse import urlparse

from dotenv import load_dotenv

# Get logger for this module
logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_RPC_ENDPOINT = "https://api.devnet.solana.com"
DEFAULT_KEYPAIR_PATH = "./keypair.json"


@dataclass(frozen=True, slots=True)
class RpcConfig:
    """Configuration for the ledger RPC endpoint.

    Attributes:
        rpc_url: HTTP(S) JSON-RPC endpoint
        request_timeout: Deadline for a single RPC call in seconds
        commitment: Durability level requested for reads and submissions
    """

    rpc_url: str = DEFAULT_RPC_ENDPOINT
    request_timeout: float = 30.0
    commitment: str = "confirmed"

    SUPPORTED_COMMITMENTS: ClassVar[set[str]] = {"processed", "confirmed", "finalized"}

    def __post_init__(self) -> None:
        """Validate RPC configuration."""
        if not self.rpc_url:
            raise ValueError("RPC endpoint is required (RPC_ENDPOINT)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. Expected http or https"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.commitment not in self.SUPPORTED_COMMITMENTS:
            raise ValueError(
                f"Unsupported commitment: {self.commitment}. "
                f"Supported: {', '.join(sorted(self.SUPPORTED_COMMITMENTS))}"
            )

    @property
    def cluster(self) -> str:
        """Cluster name derived from the endpoint, used for explorer links."""
        host = urlparse(self.rpc_url).hostname or ""
        for name in ("devnet", "testnet", "mainnet"):
            if name in host:
                return "mainnet-beta" if name == "mainnet" else name
        return "custom"

    def explorer_url(self, signature: str) -> str:
        """Explorer link for a transaction signature."""
        return f"https://explorer.solana.com/tx/{signature}?cluster={self.cluster}"


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry and confirmation-polling settings."""
    airdrop_max_attempts: int = 3
    airdrop_base_delay: float = 1.0  # seconds, doubled per attempt
    confirm_poll_interval: float = 1.0  # seconds between status polls
    confirm_max_polls: int = 30

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.airdrop_max_attempts < 1:
            raise ValueError(
                f"Airdrop max attempts must be at least 1, got {self.airdrop_max_attempts}"
            )
        if self.airdrop_max_attempts > 10:
            raise ValueError(
                f"Airdrop max attempts too high (max 10), got {self.airdrop_max_attempts}"
            )
        if self.airdrop_base_delay < 0:
            raise ValueError(
                f"Airdrop base delay must be non-negative, got {self.airdrop_base_delay}"
            )
        if self.confirm_poll_interval < 0:
            raise ValueError(
                f"Confirmation poll interval must be non-negative, got {self.confirm_poll_interval}"
            )
        if self.confirm_max_polls < 1:
            raise ValueError(
                f"Confirmation max polls must be at least 1, got {self.confirm_max_polls}"
            )


@dataclass(frozen=True, slots=True)
class TokenConfig:
    """Amounts used by the provisioning workflow.

    Token amounts are whole tokens, scaled by 10**decimals when submitted.
    """
    decimals: int = 9
    min_payer_lamports: int = LAMPORTS_PER_SOL // 100  # 0.01 SOL
    airdrop_lamports: int = 10 * LAMPORTS_PER_SOL
    mint_tokens: int = 1000
    transfer_tokens: int = 100

    def __post_init__(self) -> None:
        """Validate token configuration."""
        if not 0 <= self.decimals <= 18:
            raise ValueError(f"Decimals must be between 0 and 18, got {self.decimals}")
        if self.min_payer_lamports < 0:
            raise ValueError(
                f"Minimum payer balance must be non-negative, got {self.min_payer_lamports}"
            )
        if self.airdrop_lamports <= 0:
            raise ValueError(f"Airdrop amount must be positive, got {self.airdrop_lamports}")
        if self.mint_tokens <= 0:
            raise ValueError(f"Mint amount must be positive, got {self.mint_tokens}")
        if not 0 < self.transfer_tokens <= self.mint_tokens:
            raise ValueError(
                f"Transfer amount must be positive and not exceed the mint amount, "
                f"got {self.transfer_tokens}"
            )

    @property
    def mint_amount(self) -> int:
        """Issuance amount in base units."""
        return self.mint_tokens * 10**self.decimals

    @property
    def transfer_amount(self) -> int:
        """Transfer amount in base units."""
        return self.transfer_tokens * 10**self.decimals


@dataclass(frozen=True, slots=True)
class ProvisionerConfig:
    """Main configuration for the provisioner.

    Attributes:
        rpc: Endpoint settings
        retry: Retry and polling settings
        token: Workflow amounts
        payer_keypair_path: Path to the payer's JSON key file
    """

    rpc: RpcConfig = field(default_factory=RpcConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    token: TokenConfig = field(default_factory=TokenConfig)
    payer_keypair_path: str = DEFAULT_KEYPAIR_PATH

    def __post_init__(self) -> None:
        """Validate provisioner configuration."""
        if not self.payer_keypair_path:
            raise ValueError("Payer keypair path is required (PAYER_KEYPAIR_PATH)")

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "ProvisionerConfig":
        """Load configuration from environment variables.

        Values from a .env file are loaded first; variables already set in
        the environment take precedence.

        Args:
            dotenv_path: Optional explicit .env file location

        Returns:
            ProvisionerConfig instance with loaded values

        Raises:
            ValueError: If environment variables are invalid
        """
        load_dotenv(dotenv_path)

        rpc_config = RpcConfig(
            rpc_url=os.environ.get("RPC_ENDPOINT", DEFAULT_RPC_ENDPOINT),
            request_timeout=float(os.environ.get("REQUEST_TIMEOUT", "30")),
            commitment=os.environ.get("COMMITMENT", "confirmed"),
        )

        retry_config = RetryConfig(
            airdrop_max_attempts=int(os.environ.get("AIRDROP_MAX_ATTEMPTS", "3")),
            airdrop_base_delay=float(os.environ.get("AIRDROP_BASE_DELAY", "1.0")),
            confirm_poll_interval=float(os.environ.get("CONFIRM_POLL_INTERVAL", "1.0")),
            confirm_max_polls=int(os.environ.get("CONFIRM_MAX_POLLS", "30")),
        )

        return cls(
            rpc=rpc_config,
            retry=retry_config,
            token=TokenConfig(),
            payer_keypair_path=os.environ.get("PAYER_KEYPAIR_PATH", DEFAULT_KEYPAIR_PATH),
        )

    def with_overrides(
        self,
        rpc_url: str | None = None,
        payer_keypair_path: str | None = None
    ) -> "ProvisionerConfig":
        """Create a new config with command-line overrides applied.

        Since the config is frozen, a new instance is returned.
        """
        config = self
        if rpc_url:
            config = replace(config, rpc=replace(config.rpc, rpc_url=rpc_url))
        if payer_keypair_path:
            config = replace(config, payer_keypair_path=payer_keypair_path)
        return config

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("SPL Provisioner Configuration")
        logger.info("=" * 60)

        logger.info("RPC:")
        logger.info(f"  Endpoint: {self.rpc.rpc_url} ({self.rpc.cluster})")
        logger.info(f"  Request Timeout: {self.rpc.request_timeout} seconds")
        logger.info(f"  Commitment: {self.rpc.commitment}")

        logger.info("Retry Settings:")
        logger.info(f"  Airdrop Attempts: {self.retry.airdrop_max_attempts}")
        logger.info(f"  Airdrop Base Delay: {self.retry.airdrop_base_delay} seconds")
        logger.info(
            f"  Confirmation Polling: {self.retry.confirm_max_polls} x "
            f"{self.retry.confirm_poll_interval} seconds"
        )

        logger.info("Token Settings:")
        logger.info(f"  Decimals: {self.token.decimals}")
        logger.info(f"  Mint Amount: {self.token.mint_tokens} tokens")
        logger.info(f"  Transfer Amount: {self.token.transfer_tokens} tokens")

        logger.info(f"Payer Keypair: {self.payer_keypair_path}")
        logger.info("=" * 60)
