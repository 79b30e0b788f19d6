"""In-memory JSON-RPC node used by the tests.

Subclasses RPCClient and answers ``call`` directly, so LedgerClient, the
orchestrator and the aggregator run their real request paths without a network.
"""

from typing import Any, Callable, Dict, List, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak

from launchpad_ops import (
    BOUGHT_EVENT,
    DEFAULT_SALE_CREATED_EVENT_DECL,
    EventABI,
    RPCClient,
    rpc_error_from,
    topic_address,
)

FACTORY = "0x" + "f1" * 20
TOKEN = "0x" + "70" * 20
USDC = "0x" + "c0" * 20
SENDER = "0x" + "5e" * 20
SALE = "0x" + "5a" * 20
BUYER_A = "0x" + "a1" * 20
BUYER_B = "0x" + "b2" * 20

SALE_CREATED_EVENT = EventABI.parse(DEFAULT_SALE_CREATED_EVENT_DECL)


def selector(signature: str) -> str:
    return "0x" + keccak(text=signature)[:4].hex()


def uint_result(value: int) -> str:
    return "0x" + abi_encode(["uint256"], [value]).hex()


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


def bought_log(
    sale: str,
    buyer: str,
    usdc_in: int,
    fee: int,
    tokens_out: int,
    block: int,
    index: int = 0,
    tx_hash: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "address": sale,
        "topics": [BOUGHT_EVENT.topic0, topic_address(buyer)],
        "data": "0x" + abi_encode(["uint256", "uint256", "uint256"], [usdc_in, fee, tokens_out]).hex(),
        "blockNumber": hex(block),
        "logIndex": hex(index),
        "transactionHash": tx_hash or tx_hash_for(block * 1000 + index),
        "removed": False,
    }


def sale_created_log(factory: str, sale: str, owner: str, token: str, block: int) -> Dict[str, Any]:
    return {
        "address": factory,
        "topics": [
            SALE_CREATED_EVENT.topic0,
            topic_address(sale),
            topic_address(owner),
            topic_address(token),
        ],
        "data": "0x",
        "blockNumber": hex(block),
        "logIndex": "0x0",
    }


def make_receipt(
    tx_hash: str,
    block: int,
    logs: Optional[List[Dict[str, Any]]] = None,
    status: int = 1,
    to: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "transactionHash": tx_hash,
        "blockNumber": hex(block),
        "status": hex(status),
        "to": to,
        "logs": logs or [],
    }


class FakeChain(RPCClient):
    def __init__(self, latest: int = 100):
        super().__init__("http://fake-node")
        self.latest = latest
        self.finalized = latest
        self.logs: List[Dict[str, Any]] = []
        self.max_log_range: Optional[int] = None
        self.contracts: Dict[Any, Callable[[str], str]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.sent: List[Dict[str, Any]] = []
        self.on_send: Optional[Callable[[Dict[str, Any], str], Optional[Dict[str, Any]]]] = None
        self.requests: List[Any] = []
        self.nonce = 0

    async def __aenter__(self) -> "FakeChain":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    def answer(self, address: str, signature: str, fn: Callable[[str], str]) -> None:
        self.contracts[(address.lower(), selector(signature))] = fn

    async def call(self, method: str, params: List[Any], max_attempts: Optional[int] = None) -> Any:
        self.requests.append((method, params))
        return getattr(self, "_" + method)(*params)

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.requests if m == method)

    def _eth_blockNumber(self) -> str:
        return hex(self.latest)

    def _eth_getBlockByNumber(self, tag: str, full: bool) -> Dict[str, Any]:
        number = {"latest": self.latest, "safe": self.finalized, "finalized": self.finalized}.get(tag)
        if number is None:
            number = int(tag, 16)
        return {"number": hex(number)}

    def _eth_getLogs(self, f: Dict[str, Any]) -> List[Dict[str, Any]]:
        start = int(f["fromBlock"], 16)
        end = int(f["toBlock"], 16)
        if self.max_log_range is not None and end - start + 1 > self.max_log_range:
            raise rpc_error_from(
                {"code": -32005, "message": f"query exceeds max block range {self.max_log_range}"}
            )
        out = [
            lg
            for lg in self.logs
            if start <= int(lg["blockNumber"], 16) <= end
            and lg["address"].lower() == f["address"]
            and lg["topics"][0] == f["topics"][0]
        ]
        # nodes are not trusted to return logs in order
        return list(reversed(out))

    def _eth_call(self, tx: Dict[str, Any], block: str) -> str:
        return self.contracts[(tx["to"].lower(), tx["data"][:10])](tx["data"])

    def _eth_getTransactionCount(self, address: str, tag: str) -> str:
        return hex(self.nonce)

    def _eth_sendTransaction(self, tx: Dict[str, Any]) -> str:
        self.nonce += 1
        tx_hash = tx_hash_for(len(self.sent) + 1)
        self.sent.append(tx)
        if self.on_send:
            receipt = self.on_send(tx, tx_hash)
            if receipt is not None:
                self.receipts[tx_hash] = receipt
        return tx_hash

    def _eth_getTransactionReceipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)
