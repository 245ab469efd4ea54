"""Web3 ledger client: talks to the distributor contract over JSON-RPC.

Submissions are signed locally with the configured key, sent raw, and
awaited with ``wait_for_transaction_receipt`` bounded by ``timeout``.
A timeout is a local failure to retry later, never an indefinite hang.

Contract surface used (subset of the game contract ABI):
    setMerkleDistribution(bytes32 root, uint256 total, uint8 vault, uint256 days)
    finalizeDistribution(uint256 id)
    getDistributionInfo(uint256 id) -> (root, totalAllocated, totalClaimed,
        startTime, endTime, vaultType, finalized, isActive, unclaimed)
    getVaultInfo(uint8 vault) -> (totalAllocated, spent, remaining)
    getClaimedAmount(uint256 id, address user) -> uint256
    event MerkleDistributionCreated(id, root, total, vault, startTime, endTime)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from merkledrop.errors import LedgerSubmissionError
from merkledrop.ledger.client import (
    DistributionReceipt,
    FinalizeReceipt,
    LedgerDistributionState,
)
from merkledrop.models.distribution import VaultType

logger = logging.getLogger(__name__)


DISTRIBUTOR_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "setMerkleDistribution",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "merkleRoot", "type": "bytes32"},
            {"name": "totalAllocated", "type": "uint256"},
            {"name": "vaultType", "type": "uint8"},
            {"name": "durationInDays", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "finalizeDistribution",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "distributionId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getDistributionInfo",
        "stateMutability": "view",
        "inputs": [{"name": "distributionId", "type": "uint256"}],
        "outputs": [
            {"name": "merkleRoot", "type": "bytes32"},
            {"name": "totalAllocated", "type": "uint256"},
            {"name": "totalClaimed", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
            {"name": "endTime", "type": "uint256"},
            {"name": "vaultType", "type": "uint8"},
            {"name": "finalized", "type": "bool"},
            {"name": "isActive", "type": "bool"},
            {"name": "unclaimedAmount", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "getVaultInfo",
        "stateMutability": "view",
        "inputs": [{"name": "vaultType", "type": "uint8"}],
        "outputs": [
            {"name": "totalAllocated", "type": "uint256"},
            {"name": "spent", "type": "uint256"},
            {"name": "remaining", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "getClaimedAmount",
        "stateMutability": "view",
        "inputs": [
            {"name": "distributionId", "type": "uint256"},
            {"name": "user", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "MerkleDistributionCreated",
        "anonymous": False,
        "inputs": [
            {"name": "distributionId", "type": "uint256", "indexed": True},
            {"name": "merkleRoot", "type": "bytes32", "indexed": False},
            {"name": "totalAllocated", "type": "uint256", "indexed": False},
            {"name": "vaultType", "type": "uint8", "indexed": False},
            {"name": "startTime", "type": "uint256", "indexed": False},
            {"name": "endTime", "type": "uint256", "indexed": False},
        ],
    },
]


class Web3LedgerClient:
    """LedgerClient backed by a deployed distributor contract.

    Usage:
        client = Web3LedgerClient(
            rpc_url="https://...",
            contract_address="0x...",
            private_key="0x...",
            chain_id=97,
        )
        receipt = client.submit_distribution(root, total, VaultType.PLAYER_TASKS, 7)
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        timeout: float = 300.0,
        gas_buffer_percent: int = 20,
    ) -> None:
        from web3 import Web3, HTTPProvider
        from eth_account import Account

        self._w3 = Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._account = Account.from_key(private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=DISTRIBUTOR_ABI,
        )
        self._chain_id = chain_id
        self._timeout = timeout
        self._gas_buffer_percent = gas_buffer_percent

    @property
    def signer_address(self) -> str:
        return self._account.address

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def submit_distribution(
        self,
        root: str,
        total: int,
        vault_type: VaultType,
        duration_days: int,
    ) -> DistributionReceipt:
        from web3.logs import DISCARD

        fn = self._contract.functions.setMerkleDistribution(
            bytes(self._w3.to_bytes(hexstr=root)),
            int(total),
            vault_type.ledger_index,
            int(duration_days),
        )
        tx_hash, receipt = self._transact("submit_distribution", fn)

        events = self._contract.events.MerkleDistributionCreated().process_receipt(
            receipt, errors=DISCARD,
        )
        if not events:
            raise LedgerSubmissionError(
                "submit_distribution",
                "MerkleDistributionCreated event not found in transaction receipt",
                tx_ref=tx_hash,
            )
        args = events[0]["args"]
        return DistributionReceipt(
            distribution_id=int(args["distributionId"]),
            start_time=datetime.fromtimestamp(int(args["startTime"]), tz=timezone.utc),
            end_time=datetime.fromtimestamp(int(args["endTime"]), tz=timezone.utc),
            tx_ref=tx_hash,
            block_number=receipt["blockNumber"],
        )

    def submit_finalize(self, distribution_id: int) -> FinalizeReceipt:
        fn = self._contract.functions.finalizeDistribution(int(distribution_id))
        tx_hash, receipt = self._transact("submit_finalize", fn)
        return FinalizeReceipt(tx_ref=tx_hash, block_number=receipt["blockNumber"])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_distribution(self, distribution_id: int) -> LedgerDistributionState:
        info = self._call(
            "read_distribution",
            self._contract.functions.getDistributionInfo(int(distribution_id)).call,
        )
        return LedgerDistributionState(total_claimed=int(info[2]), finalized=bool(info[6]))

    def read_vault_remaining(self, vault_type: VaultType) -> int:
        info = self._call(
            "read_vault_remaining",
            self._contract.functions.getVaultInfo(vault_type.ledger_index).call,
        )
        return int(info[2])

    def read_claimed_amount(self, distribution_id: int, address: str) -> int:
        from web3 import Web3

        fn = self._contract.functions.getClaimedAmount(
            int(distribution_id), Web3.to_checksum_address(address),
        )
        return int(self._call("read_claimed_amount", fn.call))

    def signer_balance(self) -> int:
        return int(self._call(
            "signer_balance",
            lambda: self._w3.eth.get_balance(self._account.address),
        ))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _transact(self, operation: str, fn: Any) -> tuple[str, Any]:
        """Sign, send and await a contract call. Returns (tx_hash, receipt)."""
        from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

        try:
            gas_estimate = fn.estimate_gas({"from": self._account.address})
            tx = fn.build_transaction({
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(self._account.address),
                "chainId": self._chain_id,
                "gas": gas_estimate * (100 + self._gas_buffer_percent) // 100,
            })
        except ContractLogicError as exc:
            raise LedgerSubmissionError(
                operation, f"reverted: {_revert_reason(exc)}",
                revert_reason=_revert_reason(exc),
            ) from exc
        except (Web3Exception, OSError) as exc:
            raise LedgerSubmissionError(operation, str(exc)) from exc

        signed = self._account.sign_transaction(tx)
        try:
            raw_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, OSError, ValueError) as exc:
            raise LedgerSubmissionError(operation, str(exc)) from exc
        tx_hash = self._w3.to_hex(raw_hash)
        logger.info("%s: transaction sent %s, waiting for confirmation", operation, tx_hash)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(raw_hash, timeout=self._timeout)
        except TimeExhausted as exc:
            raise LedgerSubmissionError(
                operation,
                f"no confirmation within {self._timeout}s for {tx_hash}",
                is_timeout=True,
                tx_ref=tx_hash,
            ) from exc
        except (Web3Exception, OSError) as exc:
            raise LedgerSubmissionError(operation, str(exc), tx_ref=tx_hash) from exc

        if receipt["status"] != 1:
            raise LedgerSubmissionError(operation, "transaction reverted", tx_ref=tx_hash)

        logger.info(
            "%s: confirmed %s in block %s (gas used %s)",
            operation, tx_hash, receipt["blockNumber"], receipt.get("gasUsed"),
        )
        return tx_hash, receipt

    def _call(self, operation: str, call: Callable[[], Any]) -> Any:
        from web3.exceptions import ContractLogicError, Web3Exception

        try:
            return call()
        except ContractLogicError as exc:
            raise LedgerSubmissionError(
                operation, f"reverted: {_revert_reason(exc)}",
                revert_reason=_revert_reason(exc),
            ) from exc
        except (Web3Exception, OSError) as exc:
            raise LedgerSubmissionError(operation, str(exc)) from exc


def _revert_reason(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.removeprefix("execution reverted: ")
