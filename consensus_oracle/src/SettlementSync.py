"""Settlement sync: push trusted prices to on-chain aggregator contracts.

Each asset has its own aggregator contract, discovered through a feed
directory contract keyed by ``keccak256("oracle/<asset>/usd")``. Assets
without a registered feed are skipped. Prices are scaled to NUM_DECIMALS
fixed-point integers and submitted as one observation per cycle.

.. code-block:: python

    >>> ContractSettlementSync.compute_feed_hash("BTC") == Web3.keccak(text="oracle/btc/usd")
    True
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from web3 import Web3

from .errors import ConfigurationError, SettlementSyncFailure

if TYPE_CHECKING:
    from web3.contract import Contract
    from web3.types import TxParams

    from .Quote import AggregatedPrice

logger = logging.getLogger(__name__)

NUM_DECIMALS = 10
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

PRICE_FEED_DIRECTORY_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "feeds",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

AGGREGATOR_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "latestRoundData",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
    },
    {
        "type": "function",
        "name": "submitObservation",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
        ],
        "outputs": [],
    },
]


class SettlementSync(Protocol):
    async def sync(self, prices: dict[str, AggregatedPrice]) -> int: ...


class ContractSettlementSync:
    """Submits aggregated prices to per-asset aggregator contracts.

    :ivar w3: Web3 instance with a default account able to send transactions.
    :ivar directory: Feed directory contract.
    :ivar decimals: Fixed-point decimals of submitted answers.
    """

    def __init__(
        self,
        w3: Web3,
        directory_address: str,
        submit_tx: Callable[[TxParams], Any] | None = None,
        decimals: int = NUM_DECIMALS,
    ) -> None:
        """Initialize the sync.

        :param w3: Connected Web3 instance.
        :param directory_address: Address of the feed directory contract.
        :param submit_tx: Transaction sender; defaults to send and wait for receipt.
        :param decimals: Fixed-point decimals of submitted answers.
        """
        self.w3 = w3
        self.directory = w3.eth.contract(
            address=directory_address, abi=PRICE_FEED_DIRECTORY_ABI
        )
        self.decimals = decimals
        self._submit_tx = submit_tx or self._send_and_wait
        self._uses_node_account = submit_tx is None
        self._contracts: dict[str, Contract] = {}
        self._round_ids: dict[str, int] = {}

    @classmethod
    def from_rpc(cls, rpc_url: str, directory_address: str) -> ContractSettlementSync:
        """Build a sync talking to a JSON-RPC node.

        No request is made here; the node is first contacted by sync(), so
        an unreachable node only fails settlement, never startup.

        :raises ConfigurationError: If the directory address is not an address.
        """
        try:
            address = Web3.to_checksum_address(directory_address)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid feed directory address {directory_address}: {e}"
            ) from e
        return cls(Web3(Web3.HTTPProvider(rpc_url)), address)

    @staticmethod
    def compute_feed_hash(asset: str) -> bytes:
        """Feed directory key of an asset's USD feed."""
        return Web3.keccak(text=f"oracle/{asset.lower()}/usd")

    def scale_price(self, price: float) -> int:
        return round(price * 10**self.decimals)

    async def sync(self, prices: dict[str, AggregatedPrice]) -> int:
        """Submit one observation per asset with a registered feed.

        Every asset is attempted even if an earlier one fails.

        :param prices: Trusted aggregated prices keyed by asset.
        :returns: Number of observations submitted.
        :raises SettlementSyncFailure: If at least one submission failed.
        """
        submitted = 0
        failures: list[str] = []
        for asset, price in prices.items():
            try:
                if await asyncio.to_thread(self._submit, asset, price):
                    submitted += 1
            except SettlementSyncFailure as e:
                logger.warning(f"{asset}: settlement sync failed: {e}")
                failures.append(asset)

        if failures:
            raise SettlementSyncFailure(
                f"Settlement sync failed for {', '.join(failures)}",
                asset=failures[0] if len(failures) == 1 else None,
            )
        return submitted

    def _resolve(self, asset: str) -> Contract | None:
        if asset in self._contracts:
            return self._contracts[asset]

        address = self.directory.functions.feeds(self.compute_feed_hash(asset)).call()
        if address == ZERO_ADDRESS:
            logger.debug(f"{asset}: no aggregator registered, skipping sync")
            return None

        contract = self.w3.eth.contract(address=address, abi=AGGREGATOR_ABI)
        self._round_ids[asset] = contract.functions.latestRoundData().call()[0]
        self._contracts[asset] = contract
        logger.info(f"{asset}: using aggregator contract {address}")
        return contract

    def _submit(self, asset: str, price: AggregatedPrice) -> bool:
        try:
            contract = self._resolve(asset)
            if contract is None:
                return False

            if self._uses_node_account:
                self._ensure_account()
            round_id = self._round_ids[asset] + 1
            started_at = int(min(q.timestamp for q in price.sources))
            updated_at = int(price.timestamp)
            tx_params = contract.functions.submitObservation(
                round_id,
                self.scale_price(price.median_price),
                started_at,
                updated_at,
            ).build_transaction({"gasPrice": self.w3.eth.gas_price})
            result = self._submit_tx(tx_params)
        except SettlementSyncFailure:
            raise
        except Exception as e:
            raise SettlementSyncFailure(str(e), asset=asset) from e

        self._round_ids[asset] = round_id
        logger.info(
            f"{asset}: round {round_id} submitted "
            f"(price=${price.median_price:.6f}). Result: {result}"
        )
        return True

    def _ensure_account(self) -> None:
        if self.w3.eth.default_account:
            return
        accounts = self.w3.eth.accounts
        if not accounts:
            raise SettlementSyncFailure("RPC node exposes no account to send from")
        self.w3.eth.default_account = accounts[0]
        logger.info(f"Sending settlement transactions from {accounts[0]}")

    def _send_and_wait(self, tx: TxParams) -> Any:
        tx_hash = self.w3.eth.send_transaction(tx)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise SettlementSyncFailure(f"Transaction {tx_hash.hex()} reverted")
        return receipt
