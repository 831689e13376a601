"""Unit tests for ContractSettlementSync."""

import asyncio
from unittest.mock import MagicMock

import pytest
from web3 import Web3

from consensus_oracle.src.errors import ConfigurationError, SettlementSyncFailure
from consensus_oracle.src.Quote import AggregatedPrice, RawQuote
from consensus_oracle.src.SettlementSync import (
    NUM_DECIMALS,
    ZERO_ADDRESS,
    ContractSettlementSync,
)

DIRECTORY = "0x00000000000000000000000000000000000000d1"
BTC_FEED = "0x00000000000000000000000000000000000000b1"


def make_price(asset: str, price: float, ts: float = 1030.0) -> AggregatedPrice:
    quotes = [
        RawQuote(asset, price, "coinbase", 1000.0, 0.97),
        RawQuote(asset, price, "kraken", 1010.0, 0.97),
    ]
    return AggregatedPrice(asset, price, quotes, 0.9, ts)


def make_w3(feeds: dict[bytes, str], round_id: int = 7):
    """Web3 double whose directory resolves ``feeds`` and aggregators record submissions."""
    w3 = MagicMock()
    w3.eth.gas_price = 100
    aggregators = {}

    directory = MagicMock()
    directory.functions.feeds.side_effect = lambda h: MagicMock(
        call=MagicMock(return_value=feeds.get(h, ZERO_ADDRESS))
    )

    def contract(address, abi):
        if address == DIRECTORY:
            return directory
        aggregator = MagicMock()
        aggregator.functions.latestRoundData.return_value.call.return_value = (round_id, 0, 0, 0, 0)
        aggregator.functions.submitObservation.return_value.build_transaction.return_value = {
            "to": address
        }
        aggregators[address] = aggregator
        return aggregator

    w3.eth.contract.side_effect = contract
    return w3, aggregators


class TestFeedHash:
    """Test feed directory keys."""

    def test_feed_hash(self) -> None:
        """Keys are keccak256 of oracle/<asset>/usd in lower case."""
        assert ContractSettlementSync.compute_feed_hash("BTC") == Web3.keccak(text="oracle/btc/usd")
        assert len(ContractSettlementSync.compute_feed_hash("ETH")) == 32


class TestSync:
    """Test observation submission."""

    def test_submits_registered_assets(self) -> None:
        """Registered assets are submitted; unregistered ones skipped."""
        w3, aggregators = make_w3({ContractSettlementSync.compute_feed_hash("BTC"): BTC_FEED})
        submit_tx = MagicMock(return_value={"status": 1})
        sync = ContractSettlementSync(w3, DIRECTORY, submit_tx=submit_tx)

        submitted = asyncio.run(
            sync.sync({"BTC": make_price("BTC", 60500.0), "ETH": make_price("ETH", 3000.0)})
        )

        assert submitted == 1
        aggregators[BTC_FEED].functions.submitObservation.assert_called_once_with(
            8, 60500 * 10**NUM_DECIMALS, 1000, 1030
        )
        submit_tx.assert_called_once_with({"to": BTC_FEED})

    def test_round_id_increments(self) -> None:
        """Consecutive syncs use consecutive round ids."""
        w3, aggregators = make_w3({ContractSettlementSync.compute_feed_hash("BTC"): BTC_FEED})
        sync = ContractSettlementSync(w3, DIRECTORY, submit_tx=MagicMock())

        asyncio.run(sync.sync({"BTC": make_price("BTC", 60000.0)}))
        asyncio.run(sync.sync({"BTC": make_price("BTC", 60100.0)}))

        calls = aggregators[BTC_FEED].functions.submitObservation.call_args_list
        assert [c.args[0] for c in calls] == [8, 9]

    def test_submit_failure_raises(self) -> None:
        """A failing transaction surfaces as SettlementSyncFailure."""
        w3, _ = make_w3({ContractSettlementSync.compute_feed_hash("BTC"): BTC_FEED})
        submit_tx = MagicMock(side_effect=RuntimeError("nonce too low"))
        sync = ContractSettlementSync(w3, DIRECTORY, submit_tx=submit_tx)

        with pytest.raises(SettlementSyncFailure, match="BTC") as exc_info:
            asyncio.run(sync.sync({"BTC": make_price("BTC", 60000.0)}))
        assert exc_info.value.asset == "BTC"

    def test_scale_price(self) -> None:
        """Prices are scaled to fixed-point integers."""
        w3, _ = make_w3({})
        sync = ContractSettlementSync(w3, DIRECTORY, decimals=2)
        assert sync.scale_price(99.87) == 9987


class TestNodeAccount:
    """Test sending through the node's own account."""

    def test_first_node_account_used(self) -> None:
        """Without an injected sender the node's first account signs."""
        w3, _ = make_w3({ContractSettlementSync.compute_feed_hash("BTC"): BTC_FEED})
        w3.eth.default_account = None
        w3.eth.accounts = ["0x00000000000000000000000000000000000000a1"]
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
        sync = ContractSettlementSync(w3, DIRECTORY)

        assert asyncio.run(sync.sync({"BTC": make_price("BTC", 60000.0)})) == 1
        assert w3.eth.default_account == "0x00000000000000000000000000000000000000a1"
        w3.eth.send_transaction.assert_called_once_with({"to": BTC_FEED})

    def test_no_node_account(self) -> None:
        """A node without accounts fails the sync, not the caller."""
        w3, _ = make_w3({ContractSettlementSync.compute_feed_hash("BTC"): BTC_FEED})
        w3.eth.default_account = None
        w3.eth.accounts = []
        sync = ContractSettlementSync(w3, DIRECTORY)

        with pytest.raises(SettlementSyncFailure, match="BTC"):
            asyncio.run(sync.sync({"BTC": make_price("BTC", 60000.0)}))
        w3.eth.send_transaction.assert_not_called()


class TestFromRpc:
    """Test construction from an RPC URL."""

    def test_unreachable_node_fails_only_sync(self) -> None:
        """Building against a dead node succeeds; syncing reports the failure."""
        sync = ContractSettlementSync.from_rpc(
            "http://127.0.0.1:1", "0x0000000000000000000000000000000000000001"
        )

        with pytest.raises(SettlementSyncFailure):
            asyncio.run(sync.sync({"BTC": make_price("BTC", 60000.0)}))

    def test_invalid_directory_address(self) -> None:
        """A malformed directory address is a configuration error."""
        with pytest.raises(ConfigurationError, match="feed directory"):
            ContractSettlementSync.from_rpc("http://127.0.0.1:1", "not-an-address")
