"""
tests/test_chain.py

Unit tests for the web3 boundary: log chunking, batch reads, decoding and
transaction submission. The RPC provider is replaced by mocks.
"""

import pytest
from unittest.mock import Mock
from hexbytes import HexBytes
from web3 import Web3
from web3.providers.base import BaseProvider

from baseflip.chain import (
    BASEFLIP,
    BASEFLIP_ABI,
    ChainClient,
    TransactionFailed,
    address_topic,
    event_topic,
)
from baseflip.models import Group, RoundState, StakeEvent


CONTRACT = "0x" + "12" * 20
USER = "0x" + "ab" * 20


class RangeLimitedProvider(BaseProvider):
    """Answers eth_getLogs like a public RPC node that caps the block range."""

    def __init__(self, max_range):
        super().__init__()
        self.max_range = max_range
        self.spans = []

    def make_request(self, method, params):
        flt = params[0]
        start, end = (int(v, 16) if isinstance(v, str) else v for v in (flt["fromBlock"], flt["toBlock"]))
        self.spans.append(end - start + 1)
        if end - start + 1 > self.max_range:
            return {
                "jsonrpc": "2.0",
                "id": 1,
                "error": {"code": -32005, "message": "query returned more than 10000 results"},
            }
        return {"jsonrpc": "2.0", "id": 1, "result": []}


def make_client(**overrides):
    cfg = {"baseflip_address": CONTRACT, "log_chunk_size": 20}
    cfg.update(overrides)
    return ChainClient(cfg, w3=Mock())


def abi_item(name):
    return next(item for item in BASEFLIP_ABI if item.get("name") == name)


class TestGetLogs:
    def test_halves_range_until_accepted(self):
        client = make_client()

        def get_logs(params):
            if params["toBlock"] - params["fromBlock"] + 1 > 5:
                raise ValueError("query returned more than 10000 results")
            return [{"blockNumber": params["fromBlock"], "logIndex": 0}]

        client.w3.eth.get_logs.side_effect = get_logs
        logs = client.get_logs(BASEFLIP, 0, 19)

        assert [entry["blockNumber"] for entry in logs] == [0, 5, 10, 15]

    def test_halves_on_rpc_error_response(self):
        provider = RangeLimitedProvider(max_range=1000)
        client = ChainClient({"baseflip_address": CONTRACT, "log_chunk_size": 4000}, w3=Web3(provider))

        assert client.get_logs(BASEFLIP, 0, 3999) == []
        assert provider.spans == [4000, 2000, 1000, 1000, 1000, 1000]

    def test_other_errors_propagate(self):
        client = make_client()
        client.w3.eth.get_logs.side_effect = ValueError("execution reverted")
        with pytest.raises(ValueError):
            client.get_logs(BASEFLIP, 0, 19)

    def test_sorted_by_block_and_index(self):
        client = make_client()
        client.w3.eth.get_logs.return_value = [
            {"blockNumber": 3, "logIndex": 1},
            {"blockNumber": 1, "logIndex": 5},
            {"blockNumber": 3, "logIndex": 0},
        ]
        logs = client.get_logs(BASEFLIP, 0, 10)
        assert [(x["blockNumber"], x["logIndex"]) for x in logs] == [(1, 5), (3, 0), (3, 1)]

    def test_missing_address(self):
        client = ChainClient({}, w3=Mock())
        with pytest.raises(ValueError):
            client.get_logs(BASEFLIP, 0, 10)


class TestReads:
    def test_batch_call_isolates_failures(self):
        client = make_client()

        def boom():
            raise RuntimeError("reverted")

        results = client.batch_call([(lambda x: x * 2, (2,)), (boom, ()), (lambda: "ok", ())])

        assert [r.success for r in results] == [True, False, True]
        assert results[0].value == 4
        assert results[1].error == "reverted"

    def test_get_round_decodes(self):
        client = make_client()
        contract = Mock()
        contract.functions.rounds.return_value.call.return_value = (1, 5, 6, 100, 90, True, False, False, 0)
        client._contracts[BASEFLIP] = contract

        state = client.get_round(3)

        contract.functions.rounds.assert_called_once_with(3)
        assert isinstance(state, RoundState)
        assert state.needs_winner

    def test_leaderboard_top_skips_empty_slots(self):
        client = make_client()
        contract = Mock()
        contract.functions.getLeaderboardTop.return_value.call.return_value = (
            [USER.upper().replace("0X", "0x"), "0x" + "00" * 20],
            [42, 0],
        )
        client._contracts[BASEFLIP] = contract

        assert client.leaderboard_top(2) == {USER: 42}


class TestDecoding:
    def stake_log(self, client, group=1, amount=10**17):
        return {
            "topics": [
                HexBytes(event_topic(abi_item("StakePlaced"))),
                HexBytes((7).to_bytes(32, "big")),
                HexBytes(address_topic(USER)),
            ],
            "data": HexBytes(client.w3.codec.encode(["uint8", "uint256"], [group, amount])),
            "blockNumber": 100,
            "logIndex": 4,
            "transactionIndex": 0,
            "transactionHash": HexBytes(b"\x01" * 32),
            "blockHash": HexBytes(b"\x02" * 32),
            "address": Web3.to_checksum_address(CONTRACT),
        }

    def test_fetch_events_decodes_stake(self):
        client = ChainClient({"baseflip_address": CONTRACT}, w3=Web3())
        client.get_logs = Mock(return_value=[self.stake_log(client)])

        events = client.fetch_events(0, 200, ["StakePlaced"], user=USER)

        assert events == [StakeEvent(7, USER, Group.A, 10**17, block_number=100, log_index=4)]
        topics = client.get_logs.call_args.kwargs["topics"]
        assert topics[0] == [Web3.to_hex(event_topic(abi_item("StakePlaced")))]
        assert topics[2] == address_topic(USER)

    def test_unknown_topic_skipped(self):
        client = ChainClient({"baseflip_address": CONTRACT}, w3=Web3())
        raw = self.stake_log(client)
        raw["topics"][0] = HexBytes(b"\x00" * 32)
        client.get_logs = Mock(return_value=[raw])

        assert client.fetch_events(0, 200, ["StakePlaced"]) == []

    def test_unknown_event_name(self):
        client = ChainClient({"baseflip_address": CONTRACT}, w3=Web3())
        client.get_logs = Mock()

        assert client.fetch_events(0, 200, ["Transfer"]) == []
        client.get_logs.assert_not_called()


class TestTransactions:
    def signed_client(self, status=1):
        client = make_client()
        client.account = Mock(address=Web3.to_checksum_address(USER))
        client.account.sign_transaction.return_value = Mock(raw_transaction=b"raw")
        contract = Mock()
        contract.functions.declareWinner.return_value.build_transaction.return_value = {"to": CONTRACT}
        client._contracts[BASEFLIP] = contract
        client.w3.eth.get_transaction_count.return_value = 3
        client.w3.eth.send_raw_transaction.return_value = HexBytes(b"\x12" * 32)
        client.w3.eth.wait_for_transaction_receipt.return_value = {"status": status}
        return client, contract

    def test_declare_winner(self):
        client, contract = self.signed_client()

        tx_hash = client.declare_winner(5, 2)

        assert tx_hash == "0x" + "12" * 32
        contract.functions.declareWinner.assert_called_once_with(5, 2)
        params = contract.functions.declareWinner.return_value.build_transaction.call_args.args[0]
        assert params["nonce"] == 3
        assert params["chainId"] == 84532
        client.w3.eth.send_raw_transaction.assert_called_once_with(b"raw")

    def test_reverted_transaction_raises(self):
        client, _ = self.signed_client(status=0)
        with pytest.raises(TransactionFailed):
            client.declare_winner(5, 1)

    def test_join_game_sends_entry_fee(self):
        client, contract = self.signed_client()
        client._contracts["CashOutOrDie"] = contract
        contract.functions.joinGame.return_value.build_transaction.return_value = {"to": CONTRACT}

        client.join_game(3, 1, 10**16)

        contract.functions.joinGame.assert_called_once_with(3, 1)
        params = contract.functions.joinGame.return_value.build_transaction.call_args.args[0]
        assert params["value"] == 10**16

    def test_player_actions(self):
        client, contract = self.signed_client()
        client._contracts["CashOutOrDie"] = contract

        client.submit_choice(3, 2)
        client.cash_out(3)

        contract.functions.submitChoice.assert_called_once_with(3, 2)
        contract.functions.cashOut.assert_called_once_with(3)

    def test_requires_key(self):
        client = make_client()
        with pytest.raises(RuntimeError):
            client.declare_winner(5, 1)
