"""Runtime configuration for the distributor, loaded from the environment.

Values come from process environment variables, optionally seeded from a
``.env`` file via python-dotenv. Existing environment variables win over
the file.

Usage:
    config = DistributorConfig.from_env()
    client = config.build_ledger_client()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from web3 import Web3

from merkledrop.errors import ConfigError


DEFAULT_CHAIN_ID = 11155111  # Sepolia
DEFAULT_DATABASE_PATH = Path("data") / "merkledrop.db"
DEFAULT_FINALIZATION_INTERVAL_SECONDS = 7 * 24 * 3600
DEFAULT_BACKOFF_HOURS: tuple[int, ...] = (1, 2, 3)
DEFAULT_MIN_SIGNER_BALANCE_WEI = Web3.to_wei("0.01", "ether")


@dataclass(frozen=True)
class DistributorConfig:
    """Settings shared by the CLI, the service and the finalization scheduler.

    The ledger credentials are optional here; ``build_ledger_client`` is
    the point where they become mandatory.
    """

    rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    chain_id: int = DEFAULT_CHAIN_ID
    ledger_timeout_seconds: float = 300.0
    database_path: Path = DEFAULT_DATABASE_PATH
    auto_finalization_enabled: bool = False
    finalization_interval_seconds: int = DEFAULT_FINALIZATION_INTERVAL_SECONDS
    max_finalizations_per_run: int = 50
    max_retries: int = 3
    backoff_hours: tuple[int, ...] = DEFAULT_BACKOFF_HOURS
    min_signer_balance_wei: int = DEFAULT_MIN_SIGNER_BALANCE_WEI

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("FINALIZATION_MAX_RETRIES must be >= 0")
        if self.max_retries > 0 and not self.backoff_hours:
            raise ConfigError("FINALIZATION_BACKOFF_HOURS needs at least one entry")
        if any(h <= 0 for h in self.backoff_hours):
            raise ConfigError("FINALIZATION_BACKOFF_HOURS entries must be positive")
        if self.max_finalizations_per_run <= 0:
            raise ConfigError("MAX_FINALIZATIONS_PER_RUN must be positive")
        if self.finalization_interval_seconds <= 0:
            raise ConfigError("FINALIZATION_INTERVAL_SECONDS must be positive")
        if self.ledger_timeout_seconds <= 0:
            raise ConfigError("LEDGER_TIMEOUT_SECONDS must be positive")

    def backoff_for(self, retry_number: int) -> timedelta:
        """Delay before the ``retry_number``-th retry (1-based).

        Past the end of the schedule the last entry repeats.
        """
        if retry_number < 1:
            raise ValueError("retry_number is 1-based")
        index = min(retry_number, len(self.backoff_hours)) - 1
        return timedelta(hours=self.backoff_hours[index])

    @classmethod
    def from_env(
        cls,
        env_file: "Path | str | None" = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> DistributorConfig:
        """Load from environment variables (and ``env_file`` when given).

        ``environ`` replaces ``os.environ`` entirely and skips the dotenv
        step, which keeps tests independent of the host environment.
        """
        if environ is None:
            if env_file is not None:
                load_dotenv(env_file)
            else:
                load_dotenv()
            environ = os.environ

        def get(name: str) -> Optional[str]:
            value = environ.get(name)
            if value is None or not value.strip():
                return None
            return value.strip()

        return cls(
            rpc_url=get("RPC_URL"),
            contract_address=get("DISTRIBUTOR_CONTRACT_ADDRESS"),
            private_key=get("FINALIZATION_WALLET_PRIVATE_KEY"),
            chain_id=_int(get("CHAIN_ID"), "CHAIN_ID", DEFAULT_CHAIN_ID),
            ledger_timeout_seconds=_float(
                get("LEDGER_TIMEOUT_SECONDS"), "LEDGER_TIMEOUT_SECONDS", 300.0,
            ),
            database_path=Path(get("DATABASE_PATH") or DEFAULT_DATABASE_PATH),
            auto_finalization_enabled=_bool(
                get("ENABLE_AUTO_FINALIZATION"), "ENABLE_AUTO_FINALIZATION",
            ),
            finalization_interval_seconds=_int(
                get("FINALIZATION_INTERVAL_SECONDS"),
                "FINALIZATION_INTERVAL_SECONDS",
                DEFAULT_FINALIZATION_INTERVAL_SECONDS,
            ),
            max_finalizations_per_run=_int(
                get("MAX_FINALIZATIONS_PER_RUN"), "MAX_FINALIZATIONS_PER_RUN", 50,
            ),
            max_retries=_int(get("FINALIZATION_MAX_RETRIES"), "FINALIZATION_MAX_RETRIES", 3),
            backoff_hours=_int_list(
                get("FINALIZATION_BACKOFF_HOURS"), "FINALIZATION_BACKOFF_HOURS",
            ),
            min_signer_balance_wei=_int(
                get("MIN_SIGNER_BALANCE_WEI"),
                "MIN_SIGNER_BALANCE_WEI",
                DEFAULT_MIN_SIGNER_BALANCE_WEI,
            ),
        )

    def build_ledger_client(self):
        """Construct the Web3 ledger client. Raises ConfigError when credentials are missing."""
        missing = [
            name
            for name, value in (
                ("RPC_URL", self.rpc_url),
                ("DISTRIBUTOR_CONTRACT_ADDRESS", self.contract_address),
                ("FINALIZATION_WALLET_PRIVATE_KEY", self.private_key),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing ledger settings: {', '.join(missing)}")
        if not Web3.is_address(self.contract_address):
            raise ConfigError(f"DISTRIBUTOR_CONTRACT_ADDRESS is not an address: {self.contract_address}")

        from merkledrop.ledger.web3_client import Web3LedgerClient

        return Web3LedgerClient(
            rpc_url=self.rpc_url,
            contract_address=self.contract_address,
            private_key=self.private_key,
            chain_id=self.chain_id,
            timeout=self.ledger_timeout_seconds,
        )


def _int(raw: Optional[str], name: str, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(raw: Optional[str], name: str, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _bool(raw: Optional[str], name: str) -> bool:
    if raw is None:
        return False
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _int_list(raw: Optional[str], name: str) -> tuple[int, ...]:
    if raw is None:
        return DEFAULT_BACKOFF_HOURS
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a comma-separated list of integers, got {raw!r}") from None
