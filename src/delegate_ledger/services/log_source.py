# services/log_source.py
"""
Chain access for the ledger: log range queries, point-in-time contract reads,
chain head and block timestamps.

Two endpoints are used. The event endpoint serves wide ``eth_getLogs``
ranges (free public RPCs are fine); the archive endpoint serves
``balanceOf``/``delegates`` reads at historical blocks.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from web3 import Web3

from delegate_ledger.errors import ConfigurationError, NonRetryableProviderError
from delegate_ledger.utils.normalizers import event_topic, normalize_hex, to_checksum

DEFAULT_EVENT_RPC_URL = "https://arb1.arbitrum.io/rpc"

DELEGATE_CHANGED_SIGNATURE = "DelegateChanged(address,address,address)"
DELEGATE_VOTES_CHANGED_SIGNATURE = "DelegateVotesChanged(address,uint256,uint256)"
TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"

DELEGATE_CHANGED_TOPIC = event_topic(DELEGATE_CHANGED_SIGNATURE)
DELEGATE_VOTES_CHANGED_TOPIC = event_topic(DELEGATE_VOTES_CHANGED_SIGNATURE)
TRANSFER_TOPIC = event_topic(TRANSFER_SIGNATURE)

BALANCE_OF = "balanceOf(address)"
DELEGATES = "delegates(address)"

TOKEN_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "delegates",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

SUPPORTED_FUNCTIONS = {BALANCE_OF: "balanceOf", DELEGATES: "delegates"}

# A topic position is unfiltered (None), one topic, or an OR-list of topics
TopicFilter = Optional[Union[str, Sequence[str]]]


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: Tuple[str, ...]
    data: str
    block_number: int
    log_index: int
    transaction_hash: str

    def sort_key(self):
        return (self.block_number, self.log_index)


class LogSource(Protocol):
    def get_logs(
        self,
        address: str,
        topics: Sequence[TopicFilter],
        from_block: int,
        to_block: int,
    ) -> List[RawLog]: ...

    def read_contract_at(
        self, contract_address: str, function_signature: str, args: Sequence[Any], block_number: int
    ) -> Any: ...

    def get_latest_block_number(self) -> int: ...

    def get_block_timestamp(self, block_number: int) -> int: ...


def to_raw_log(log) -> RawLog:
    """Normalise a web3 log (AttributeDict of HexBytes) into a RawLog."""
    return RawLog(
        address=str(log["address"]).lower(),
        topics=tuple(normalize_hex(topic) for topic in log["topics"]),
        data=normalize_hex(log["data"]),
        block_number=int(log["blockNumber"]),
        log_index=int(log["logIndex"]),
        transaction_hash=normalize_hex(log["transactionHash"]),
    )


class Web3LogSource:
    def __init__(
        self,
        event_rpc_url: str = DEFAULT_EVENT_RPC_URL,
        archive_rpc_url: Optional[str] = None,
        request_timeout: int = 30,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.event_w3 = Web3(
            Web3.HTTPProvider(event_rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.archive_w3 = (
            Web3(Web3.HTTPProvider(archive_rpc_url, request_kwargs={"timeout": request_timeout}))
            if archive_rpc_url
            else None
        )
        self._timestamps: Dict[int, int] = {}
        self._contracts: Dict[str, Any] = {}

    def get_logs(
        self,
        address: str,
        topics: Sequence[TopicFilter],
        from_block: int,
        to_block: int,
    ) -> List[RawLog]:
        params = {
            "address": to_checksum(address),
            "fromBlock": int(from_block),
            "toBlock": int(to_block),
            "topics": [_topic_param(topic) for topic in topics],
        }
        logs = self.event_w3.eth.get_logs(params)
        return sorted((to_raw_log(log) for log in logs), key=RawLog.sort_key)

    def _token_contract(self, contract_address: str):
        if self.archive_w3 is None:
            raise ConfigurationError("archive_rpc_url must be set for point-in-time reads")
        key = contract_address.lower()
        if key not in self._contracts:
            self._contracts[key] = self.archive_w3.eth.contract(
                address=to_checksum(contract_address), abi=TOKEN_ABI
            )
        return self._contracts[key]

    def read_contract_at(
        self, contract_address: str, function_signature: str, args: Sequence[Any], block_number: int
    ) -> Any:
        name = SUPPORTED_FUNCTIONS.get(function_signature)
        if name is None:
            raise NonRetryableProviderError(f"unsupported function {function_signature}")

        contract = self._token_contract(contract_address)
        call_args = [to_checksum(arg) for arg in args]
        result = getattr(contract.functions, name)(*call_args).call(
            block_identifier=int(block_number)
        )
        if function_signature == DELEGATES:
            return str(result).lower()
        return int(result)

    def get_latest_block_number(self) -> int:
        return int(self.event_w3.eth.block_number)

    def get_block_timestamp(self, block_number: int) -> int:
        if block_number in self._timestamps:
            return self._timestamps[block_number]
        block = self.event_w3.eth.get_block(int(block_number))
        timestamp = int(block["timestamp"])
        self._timestamps[block_number] = timestamp
        return timestamp


def _topic_param(topic: TopicFilter):
    if topic is None or isinstance(topic, str):
        return topic
    return list(topic)
