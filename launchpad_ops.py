import argparse
import asyncio
import contextlib
import fcntl
import json
import logging
import os
import re
import sys
import tempfile
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, getcontext
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence, Tuple

import aiohttp
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

getcontext().prec = 80

logger = logging.getLogger("launchpad_ops")

ERC20_TRANSFER_SIG = "transfer(address,uint256)"
ERC20_BALANCE_OF_SIG = "balanceOf(address)"
ERC20_DECIMALS_SIG = "decimals()"
CREATE_SALE_SIG = "createSale(address,bytes,address,uint256,uint256,uint256,uint256)"
TOTAL_SOLD_BASE_SIG = "totalSoldBase()"
SALE_CONSTRUCTOR_TYPES = [
    "address",
    "address",
    "address",
    "uint8",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
]
BOUGHT_EVENT_DECL = (
    "Bought(address indexed buyer,uint256 usdcIn,uint256 feeUsdc,uint256 tokensOutBase)"
)
DEFAULT_SALE_CREATED_EVENT_DECL = (
    "SaleCreated(address indexed sale,address indexed owner,address indexed token)"
)
HEAD_TAGS = {"latest", "safe", "finalized"}
RANGE_TOO_LARGE_CODES = {-32005}
RANGE_TOO_LARGE_HINTS = (
    "block range",
    "range too large",
    "range is too large",
    "query returned more than",
    "is limited to",
    "response size",
    "exceeds max",
)
RATE_LIMIT_CODES = {429, -32029}
RATE_LIMIT_HINTS = (
    "rate limit",
    "rate-limit",
    "too many requests",
    "requests per second",
    "request count exceeded",
    "compute units",
)
MAX_DECIMALS = 18

EVENT_DECL_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*$")
FUNC_SIG_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([^()]*)\)$")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def hex_to_bytes(value: Optional[str]) -> bytes:
    if not value:
        return b""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def decimal_to_str(v: Optional[Decimal], places: int = 18) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    return str(v.quantize(q))


def raw_to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def to_base_units(amount: Any, decimals: int) -> int:
    """Scale a human amount to integer base units, refusing any rounding."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if not value.is_finite():
        raise ValueError(f"amount is not finite: {amount}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"amount {amount} has more than {decimals} fractional digits"
        )
    return int(scaled)


def log_position(log: Dict[str, Any]) -> Tuple[int, int]:
    return parse_hex_int(log.get("blockNumber")), parse_hex_int(log.get("logIndex"))


class LaunchpadError(Exception):
    kind = "error"
    exit_code = 1

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash

    def __str__(self) -> str:
        if self.tx_hash:
            return f"{self.message} (tx {self.tx_hash})"
        return self.message


class ConfigError(LaunchpadError):
    kind = "config"
    exit_code = 2


class LedgerConnectionError(LaunchpadError, ConnectionError):
    kind = "connection"


class LedgerTimeoutError(LaunchpadError, TimeoutError):
    kind = "timeout"
    exit_code = 3


class ConfirmationTimeout(LedgerTimeoutError):
    """The transaction was submitted but its fate is not known yet."""

    kind = "uncertain"


class LedgerRPCError(LaunchpadError):
    kind = "rpc"

    def __init__(
        self, message: str, code: Optional[int] = None, tx_hash: Optional[str] = None
    ):
        super().__init__(message, tx_hash=tx_hash)
        self.code = code


class RangeTooLargeError(LedgerRPCError):
    kind = "range_too_large"


class RateLimitedError(LedgerRPCError):
    kind = "rate_limited"


class RevertError(LaunchpadError):
    kind = "revert"


class ConsistencyError(LaunchpadError):
    kind = "consistency"
    exit_code = 4


class PreconditionError(LaunchpadError):
    kind = "precondition"


class IdempotencyViolation(LaunchpadError):
    kind = "idempotency"


class EventDecodeError(LaunchpadError):
    kind = "decode"


def rpc_error_from(error: Any) -> LedgerRPCError:
    code: Optional[int] = None
    if isinstance(error, dict):
        raw_code = error.get("code")
        code = raw_code if isinstance(raw_code, int) else None
        message = str(error.get("message") or error)
    else:
        message = str(error)
    lowered = message.lower()
    if code in RATE_LIMIT_CODES or any(h in lowered for h in RATE_LIMIT_HINTS):
        return RateLimitedError(f"RPC error: {message}", code=code)
    if code in RANGE_TOO_LARGE_CODES or any(h in lowered for h in RANGE_TOO_LARGE_HINTS):
        return RangeTooLargeError(f"RPC error: {message}", code=code)
    return LedgerRPCError(f"RPC error: {message}", code=code)


def function_arg_types(signature: str) -> List[str]:
    m = FUNC_SIG_RE.match(signature)
    if not m:
        raise ValueError(f"invalid function signature: {signature}")
    body = m.group(2).strip()
    return [t.strip() for t in body.split(",")] if body else []


def encode_call(signature: str, args: Sequence[Any]) -> str:
    types = function_arg_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} expects {len(types)} args, got {len(args)}")
    selector = keccak(text=signature)[:4]
    return "0x" + (selector + abi_encode(types, list(args))).hex()


def _normalize_abi_value(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return normalize_address(value)
    return value


def _is_hashed_topic(abi_type: str) -> bool:
    return abi_type in {"bytes", "string"} or abi_type.endswith("]") or abi_type.startswith("(")


@dataclass(frozen=True)
class EventInput:
    type: str
    name: str
    indexed: bool


@dataclass(frozen=True)
class EventABI:
    name: str
    inputs: Tuple[EventInput, ...]

    @classmethod
    def parse(cls, declaration: str) -> "EventABI":
        """Parse ``Name(type [indexed] name, ...)`` into an event description."""
        m = EVENT_DECL_RE.match(declaration)
        if not m:
            raise ConfigError(f"invalid event declaration: {declaration}")
        body = m.group(2).strip()
        inputs: List[EventInput] = []
        for idx, part in enumerate(body.split(",") if body else []):
            tokens = part.split()
            if not tokens:
                raise ConfigError(f"empty parameter in event declaration: {declaration}")
            abi_type, rest = tokens[0], tokens[1:]
            indexed = bool(rest) and rest[0] == "indexed"
            if indexed:
                rest = rest[1:]
            if len(rest) > 1:
                raise ConfigError(f"cannot parse parameter {part.strip()!r} in {declaration}")
            inputs.append(EventInput(abi_type, rest[0] if rest else f"arg{idx}", indexed))
        return cls(m.group(1), tuple(inputs))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic0(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    def input_names(self) -> List[str]:
        return [i.name for i in self.inputs]

    def decode(self, log: Dict[str, Any]) -> Dict[str, Any]:
        topics = [str(t).lower() for t in (log.get("topics") or [])]
        if not topics or topics[0] != self.topic0:
            raise EventDecodeError(f"log is not a {self.name} event")
        indexed_inputs = [i for i in self.inputs if i.indexed]
        data_inputs = [i for i in self.inputs if not i.indexed]
        if len(topics) != len(indexed_inputs) + 1:
            raise EventDecodeError(
                f"{self.name} expects {len(indexed_inputs)} indexed topics, got {len(topics) - 1}"
            )

        values: Dict[str, Any] = {}
        try:
            for inp, topic in zip(indexed_inputs, topics[1:]):
                if inp.type == "address":
                    values[inp.name] = normalize_address(decode_topic_address(topic))
                elif _is_hashed_topic(inp.type):
                    values[inp.name] = topic
                else:
                    values[inp.name] = abi_decode([inp.type], hex_to_bytes(topic))[0]
            if data_inputs:
                decoded = abi_decode(
                    [i.type for i in data_inputs], hex_to_bytes(log.get("data"))
                )
                for inp, value in zip(data_inputs, decoded):
                    values[inp.name] = _normalize_abi_value(inp.type, value)
        except (DecodingError, ValueError) as e:
            raise EventDecodeError(f"malformed {self.name} log: {e}") from e

        values["event"] = self.name
        values["address"] = normalize_address(log["address"]) if log.get("address") else None
        values["blockNumber"] = parse_hex_int(log.get("blockNumber"))
        values["logIndex"] = parse_hex_int(log.get("logIndex"))
        values["transactionHash"] = str(log.get("transactionHash") or "").lower() or None
        return values


def find_event(
    logs: Sequence[Dict[str, Any]], event: EventABI, address: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """First decoded ``event`` among ``logs``; None when no log carries it."""
    wanted = normalize_address(address) if address else None
    for lg in logs:
        topics = lg.get("topics") or []
        if not topics or str(topics[0]).lower() != event.topic0:
            continue
        if wanted and str(lg.get("address") or "").lower() != wanted:
            continue
        return event.decode(lg)
    return None


BOUGHT_EVENT = EventABI.parse(BOUGHT_EVENT_DECL)


@dataclass
class AppConfig:
    http_rpc_url: str
    sender_address: Optional[str]
    sale_artifact_path: Optional[str]
    sale_created_event: EventABI
    confirmations: int
    tx_timeout_sec: float
    tx_poll_sec: float
    max_rpc_retries: int
    rpc_timeout_sec: int
    logs_chunk_blocks: int
    min_logs_chunk_blocks: int
    head_tag: str
    log_level: str
    analytics_output_path: str


def load_config(path: str) -> AppConfig:
    env_rpc_url = os.environ.get("RPC_URL", "").strip()
    if Path(path).exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config {path} must be a JSON object")
    elif env_rpc_url:
        raw = {}
    else:
        raise ConfigError(f"config file not found: {path} (and RPC_URL is not set)")

    http_rpc_url = env_rpc_url or str(raw.get("HTTP_RPC_URL", "")).strip()
    if not http_rpc_url:
        raise ConfigError("RPC endpoint is required: set RPC_URL or HTTP_RPC_URL")

    sender_raw = str(raw.get("SENDER_ADDRESS", "")).strip()
    try:
        sender_address = normalize_address(sender_raw) if sender_raw else None
    except ValueError as e:
        raise ConfigError(f"SENDER_ADDRESS is invalid: {e}") from e

    sale_created_event = EventABI.parse(
        str(raw.get("SALE_CREATED_EVENT", DEFAULT_SALE_CREATED_EVENT_DECL))
    )
    sale_inputs = [i for i in sale_created_event.inputs if i.name == "sale"]
    if not sale_inputs or sale_inputs[0].type != "address":
        raise ConfigError("SALE_CREATED_EVENT must declare an address input named 'sale'")

    head_tag = str(raw.get("HEAD_TAG", "finalized")).strip().lower()
    if head_tag not in HEAD_TAGS:
        raise ConfigError(f"HEAD_TAG must be one of {sorted(HEAD_TAGS)}")

    try:
        confirmations = int(raw.get("CONFIRMATIONS", 1))
        tx_timeout_sec = float(raw.get("TX_TIMEOUT_SEC", 300))
        tx_poll_sec = float(raw.get("TX_POLL_SEC", 2))
        max_rpc_retries = int(raw.get("MAX_RPC_RETRIES", 5))
        rpc_timeout_sec = int(raw.get("RPC_TIMEOUT_SEC", 12))
        logs_chunk_blocks = int(raw.get("LOGS_CHUNK_BLOCKS", 5000))
        min_logs_chunk_blocks = int(raw.get("MIN_LOGS_CHUNK_BLOCKS", 1))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid numeric config value: {e}") from e
    if confirmations < 1:
        raise ConfigError("CONFIRMATIONS must be >= 1")
    if tx_timeout_sec <= 0:
        raise ConfigError("TX_TIMEOUT_SEC must be > 0")
    if max_rpc_retries < 1:
        raise ConfigError("MAX_RPC_RETRIES must be >= 1")
    if min_logs_chunk_blocks < 1 or logs_chunk_blocks < min_logs_chunk_blocks:
        raise ConfigError("LOGS_CHUNK_BLOCKS must be >= MIN_LOGS_CHUNK_BLOCKS >= 1")

    artifact = str(raw.get("SALE_ARTIFACT_PATH", "")).strip()
    return AppConfig(
        http_rpc_url=http_rpc_url,
        sender_address=sender_address,
        sale_artifact_path=artifact or None,
        sale_created_event=sale_created_event,
        confirmations=confirmations,
        tx_timeout_sec=tx_timeout_sec,
        tx_poll_sec=max(0.0, tx_poll_sec),
        max_rpc_retries=max_rpc_retries,
        rpc_timeout_sec=rpc_timeout_sec,
        logs_chunk_blocks=logs_chunk_blocks,
        min_logs_chunk_blocks=min_logs_chunk_blocks,
        head_tag=head_tag,
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        analytics_output_path=str(raw.get("ANALYTICS_OUTPUT_PATH", "./analytics-output.json")),
    )


def setup_logging(level: str = "info") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def load_sale_bytecode(path: str) -> str:
    """Creation bytecode from a hardhat or foundry artifact."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            artifact = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read sale artifact {path}: {e}") from e
    bytecode = artifact.get("bytecode") if isinstance(artifact, dict) else None
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    if not isinstance(bytecode, str) or not bytecode.strip():
        raise ConfigError(f"sale artifact {path} has no bytecode")
    bytecode = bytecode.strip()
    if not bytecode.startswith("0x"):
        bytecode = "0x" + bytecode
    try:
        hex_to_bytes(bytecode)
    except ValueError as e:
        raise ConfigError(f"sale artifact {path} bytecode is not hex: {e}") from e
    return bytecode


class RPCClient:
    def __init__(self, url: str, max_retries: int = 5, timeout_sec: int = 12):
        self.url = url
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any], max_attempts: Optional[int] = None) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1
        attempts = max_attempts or self.max_retries

        backoff = 0.5
        for attempt in range(1, attempts + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    data = await resp.json(content_type=None)
            except asyncio.TimeoutError as e:
                if attempt >= attempts:
                    raise LedgerTimeoutError(
                        f"{method} timed out after {attempt} attempt(s)"
                    ) from e
                logger.warning("%s timed out (attempt %d/%d)", method, attempt, attempts)
            except (aiohttp.ClientError, ValueError) as e:
                if attempt >= attempts:
                    raise LedgerConnectionError(
                        f"{method} failed after {attempt} attempt(s): {e}"
                    ) from e
                logger.warning("%s failed (attempt %d/%d): %s", method, attempt, attempts, e)
            else:
                if not isinstance(data, dict):
                    raise LedgerRPCError(f"malformed RPC response for {method}: {data!r}")
                if "error" not in data:
                    return data.get("result")
                error = rpc_error_from(data["error"])
                if not isinstance(error, RateLimitedError) or attempt >= attempts:
                    raise error
                logger.warning("%s rate limited (attempt %d/%d): %s", method, attempt, attempts, error)
            await asyncio.sleep(backoff)
            backoff *= 2

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_by_number(self, block: Any) -> Optional[Dict[str, Any]]:
        tag = hex(block) if isinstance(block, int) else block
        return await self.call("eth_getBlockByNumber", [tag, False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def eth_call(self, to: str, data: str, block: Any = "latest") -> str:
        tag = hex(block) if isinstance(block, int) else block
        result = await self.call("eth_call", [{"to": to, "data": data}, tag])
        return result


class NodeSigner:
    """Submits through ``eth_sendTransaction``; keys stay with the node or an external signer."""

    def __init__(self, address: str):
        self.address = normalize_address(address)

    async def send_transaction(self, rpc: RPCClient, tx: Dict[str, Any]) -> str:
        nonce = await rpc.call("eth_getTransactionCount", [self.address, "pending"])
        payload = dict(tx)
        payload["from"] = self.address
        payload["nonce"] = nonce
        # one attempt only: a blind resend of a lost submission is not safe
        tx_hash = await rpc.call("eth_sendTransaction", [payload], max_attempts=1)
        if not tx_hash:
            raise LedgerRPCError("eth_sendTransaction returned no transaction hash")
        return str(tx_hash).lower()


class LedgerClient:
    def __init__(
        self,
        rpc: RPCClient,
        confirmations: int = 1,
        head_tag: str = "finalized",
        logs_chunk_blocks: int = 5000,
        min_logs_chunk_blocks: int = 1,
        poll_interval_sec: float = 2.0,
    ):
        self.rpc = rpc
        self.confirmations = max(1, confirmations)
        self.head_tag = head_tag
        self.logs_chunk_blocks = max(1, logs_chunk_blocks)
        self.min_logs_chunk_blocks = max(1, min(min_logs_chunk_blocks, self.logs_chunk_blocks))
        self.poll_interval_sec = poll_interval_sec

    async def block_number(self, tag: str = "latest") -> int:
        if tag == "latest":
            return await self.rpc.get_latest_block_number()
        block = await self.rpc.get_block_by_number(tag)
        if not block or block.get("number") is None:
            raise ConsistencyError(f"node returned no {tag} block")
        return parse_hex_int(block["number"])

    async def head_block(self) -> int:
        number = await self.block_number(self.head_tag)
        if self.head_tag == "latest":
            number -= self.confirmations - 1
        return max(0, number)

    async def call(
        self,
        contract_address: str,
        method_signature: str,
        args: Sequence[Any] = (),
        return_types: Sequence[str] = (),
        block: Any = "latest",
    ) -> Any:
        to = normalize_address(contract_address)
        out = await self.rpc.eth_call(to, encode_call(method_signature, args), block)
        if not return_types:
            return out
        try:
            values = abi_decode(list(return_types), hex_to_bytes(out))
        except (DecodingError, ValueError, TypeError) as e:
            raise ConsistencyError(
                f"{method_signature} on {to} returned undecodable data {out!r}"
            ) from e
        values = [_normalize_abi_value(t, v) for t, v in zip(return_types, values)]
        return values[0] if len(values) == 1 else tuple(values)

    async def iter_logs(
        self,
        contract_address: str,
        event: EventABI,
        from_block: int,
        to_block: int,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield logs in ledger order, querying in shrinking-on-demand chunks."""
        address = normalize_address(contract_address)
        chunk = self.logs_chunk_blocks
        current = max(0, from_block)
        while current <= to_block:
            end_block = min(to_block, current + chunk - 1)
            try:
                logs = await self.rpc.get_logs(
                    current, end_block, address=address, topics=[event.topic0]
                )
            except RangeTooLargeError:
                if chunk <= self.min_logs_chunk_blocks:
                    raise
                chunk = max(self.min_logs_chunk_blocks, chunk // 2)
                logger.info("log range %d-%d too large; chunk now %d blocks", current, end_block, chunk)
                continue
            for lg in sorted((x for x in logs if not x.get("removed")), key=log_position):
                yield lg
            current = end_block + 1

    async def get_logs(
        self,
        contract_address: str,
        event: EventABI,
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        return [lg async for lg in self.iter_logs(contract_address, event, from_block, to_block)]

    async def send_transaction(
        self,
        contract_address: str,
        method_signature: str,
        args: Sequence[Any],
        signer: NodeSigner,
    ) -> str:
        tx = {"to": normalize_address(contract_address), "data": encode_call(method_signature, args)}
        return await signer.send_transaction(self.rpc, tx)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.rpc.get_receipt(tx_hash)

    async def await_confirmation(self, tx_hash: str, timeout_sec: float) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt and receipt.get("blockNumber"):
                mined = parse_hex_int(receipt["blockNumber"])
                depth = 1
                if self.confirmations > 1:
                    depth = await self.block_number("latest") - mined + 1
                if depth >= self.confirmations:
                    status = receipt.get("status")
                    if status is not None and parse_hex_int(status) == 0:
                        raise RevertError(f"transaction reverted in block {mined}", tx_hash=tx_hash)
                    logger.info("tx %s confirmed in block %d", tx_hash, mined)
                    return receipt
            if loop.time() >= deadline:
                raise ConfirmationTimeout(
                    f"no confirmed receipt within {timeout_sec}s; outcome unknown",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self.poll_interval_sec)


class SaleState(str, Enum):
    UNCONFIGURED = "Unconfigured"
    CREATED = "Created"
    FUNDED = "Funded"


@dataclass
class LaunchDescriptor:
    factory_address: str
    token_address: str
    settlement_asset_address: str
    token_decimals: int
    price_in_settlement_per_token: str
    cap_tokens_human: str
    start_time: int
    end_time: int
    sale_address: Optional[str] = None
    settlement_decimals: Optional[int] = None
    sale_created_block: Optional[int] = None
    creation_tx_hash: Optional[str] = None
    funded: bool = False
    funding_tx_hash: Optional[str] = None
    version: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> SaleState:
        if not self.sale_address:
            return SaleState.UNCONFIGURED
        if self.funded:
            return SaleState.FUNDED
        return SaleState.CREATED


DESCRIPTOR_KEYS = {
    "factoryAddress": "factory_address",
    "tokenAddress": "token_address",
    "settlementAssetAddress": "settlement_asset_address",
    "tokenDecimals": "token_decimals",
    "priceInSettlementPerToken": "price_in_settlement_per_token",
    "capTokensHuman": "cap_tokens_human",
    "startTime": "start_time",
    "endTime": "end_time",
    "saleAddress": "sale_address",
    "settlementDecimals": "settlement_decimals",
    "saleCreatedBlock": "sale_created_block",
    "creationTxHash": "creation_tx_hash",
    "funded": "funded",
    "fundingTxHash": "funding_tx_hash",
    "version": "version",
}
LEGACY_DESCRIPTOR_KEYS = {
    "factory": "factoryAddress",
    "token": "tokenAddress",
    "usdc": "settlementAssetAddress",
    "priceUSDCPerToken": "priceInSettlementPerToken",
    "sale": "saleAddress",
}


def _require(raw: Dict[str, Any], key: str) -> Any:
    value = raw.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigError(f"launch descriptor is missing {key}")
    return value


def _parse_address_field(raw: Dict[str, Any], key: str, optional: bool = False) -> Optional[str]:
    value = raw.get(key)
    if optional and (value is None or value == ""):
        return None
    value = _require(raw, key)
    try:
        return normalize_address(value)
    except ValueError as e:
        raise ConfigError(f"{key} is not a valid address: {e}") from e


def _parse_int_field(
    raw: Dict[str, Any],
    key: str,
    lo: Optional[int] = None,
    hi: Optional[int] = None,
    optional: bool = False,
) -> Optional[int]:
    value = raw.get(key)
    if optional and value is None:
        return None
    value = _require(raw, key)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e
    if (lo is not None and number < lo) or (hi is not None and number > hi):
        raise ConfigError(f"{key}={number} is out of range [{lo}, {hi}]")
    return number


def _parse_amount_field(raw: Dict[str, Any], key: str) -> str:
    value = _require(raw, key)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{key} must be a decimal string, got {value!r}")
    text = value.strip() if isinstance(value, str) else repr(value)
    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise ConfigError(f"{key} is not a decimal number: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise ConfigError(f"{key} must be a positive decimal, got {value!r}")
    return text


def parse_descriptor(raw: Any) -> LaunchDescriptor:
    if not isinstance(raw, dict):
        raise ConfigError("launch descriptor must be a JSON object")
    data = dict(raw)
    for legacy, canonical in LEGACY_DESCRIPTOR_KEYS.items():
        if legacy in data:
            legacy_value = data.pop(legacy)
            data.setdefault(canonical, legacy_value)

    token_decimals = _parse_int_field(data, "tokenDecimals", 0, MAX_DECIMALS)
    settlement_decimals = _parse_int_field(
        data, "settlementDecimals", 0, MAX_DECIMALS, optional=True
    )
    start_time = _parse_int_field(data, "startTime", 0)
    end_time = _parse_int_field(data, "endTime", 0)
    if start_time >= end_time:
        raise ConfigError(f"startTime ({start_time}) must be before endTime ({end_time})")

    cap = _parse_amount_field(data, "capTokensHuman")
    price = _parse_amount_field(data, "priceInSettlementPerToken")
    try:
        to_base_units(cap, token_decimals)
        if settlement_decimals is not None:
            to_base_units(price, settlement_decimals)
    except ValueError as e:
        raise ConfigError(f"launch descriptor amount cannot be represented exactly: {e}") from e

    funded = data.get("funded", False)
    if not isinstance(funded, bool):
        raise ConfigError(f"funded must be true or false, got {funded!r}")

    descriptor = LaunchDescriptor(
        factory_address=_parse_address_field(data, "factoryAddress"),
        token_address=_parse_address_field(data, "tokenAddress"),
        settlement_asset_address=_parse_address_field(data, "settlementAssetAddress"),
        token_decimals=token_decimals,
        price_in_settlement_per_token=price,
        cap_tokens_human=cap,
        start_time=start_time,
        end_time=end_time,
        sale_address=_parse_address_field(data, "saleAddress", optional=True),
        settlement_decimals=settlement_decimals,
        sale_created_block=_parse_int_field(data, "saleCreatedBlock", 0, optional=True),
        creation_tx_hash=data.get("creationTxHash") or None,
        funded=funded,
        funding_tx_hash=data.get("fundingTxHash") or None,
        version=_parse_int_field(data, "version", 0, optional=True) or 0,
        extra={k: v for k, v in data.items() if k not in DESCRIPTOR_KEYS},
    )
    if descriptor.funded and not descriptor.sale_address:
        raise ConfigError("descriptor is marked funded but has no saleAddress")
    return descriptor


def descriptor_to_json(descriptor: LaunchDescriptor) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(descriptor.extra)
    for key, attr in DESCRIPTOR_KEYS.items():
        value = getattr(descriptor, attr)
        if value is None:
            continue
        out[key] = value
    return out


class LaunchDescriptorStore:
    """Load, validate and checkpoint launch descriptors on disk."""

    def load(self, path: str) -> LaunchDescriptor:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"launch descriptor not found: {path}") from e
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read launch descriptor {path}: {e}") from e
        return parse_descriptor(raw)

    def _disk_version(self, path: str) -> Optional[int]:
        if not Path(path).exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return int(raw.get("version", 0)) if isinstance(raw, dict) else 0

    def save(self, path: str, descriptor: LaunchDescriptor) -> LaunchDescriptor:
        """Atomically replace ``path`` with the next checkpoint of ``descriptor``."""
        try:
            on_disk = self._disk_version(path)
        except (OSError, TypeError, ValueError) as e:
            raise ConsistencyError(f"cannot verify checkpoint version of {path}: {e}") from e
        if (on_disk is None and descriptor.version != 0) or (
            on_disk is not None and on_disk != descriptor.version
        ):
            raise ConsistencyError(
                f"{path} changed on disk (version {on_disk}, expected {descriptor.version})"
            )

        saved = replace(descriptor, version=descriptor.version + 1)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(descriptor_to_json(saved), f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise
        logger.info("saved %s (version %d, state %s)", path, saved.version, saved.state.value)
        return saved

    @contextlib.contextmanager
    def lock(self, path: str) -> Iterator[None]:
        """Exclusive, non-blocking ownership of the descriptor for one transition."""
        lock_path = f"{path}.lock"
        Path(lock_path).parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise PreconditionError(
                    f"launch descriptor {path} is locked by another invocation"
                ) from e
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def funding_amount_base(descriptor: LaunchDescriptor) -> int:
    try:
        return to_base_units(descriptor.cap_tokens_human, descriptor.token_decimals)
    except ValueError as e:
        raise ConfigError(f"capTokensHuman cannot be funded exactly: {e}") from e


def price_base(descriptor: LaunchDescriptor, settlement_decimals: int) -> int:
    try:
        return to_base_units(descriptor.price_in_settlement_per_token, settlement_decimals)
    except ValueError as e:
        raise ConfigError(f"priceInSettlementPerToken cannot be encoded exactly: {e}") from e


async def resolve_settlement_decimals(ledger: LedgerClient, descriptor: LaunchDescriptor) -> int:
    if descriptor.settlement_decimals is not None:
        return descriptor.settlement_decimals
    decimals = await ledger.call(
        descriptor.settlement_asset_address, ERC20_DECIMALS_SIG, [], ["uint8"]
    )
    return int(decimals)


@dataclass
class StepResult:
    step: str
    state: Optional[SaleState]
    sale_address: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[LaunchpadError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DeploymentOrchestrator:
    def __init__(
        self,
        ledger: LedgerClient,
        store: LaunchDescriptorStore,
        signer: NodeSigner,
        sale_bytecode: Optional[str] = None,
        sale_created_event: Optional[EventABI] = None,
        tx_timeout_sec: float = 300,
    ):
        self.ledger = ledger
        self.store = store
        self.signer = signer
        self.sale_bytecode = sale_bytecode
        self.sale_created_event = sale_created_event or EventABI.parse(
            DEFAULT_SALE_CREATED_EVENT_DECL
        )
        self.tx_timeout_sec = tx_timeout_sec

    def build_sale_init_code(self, descriptor: LaunchDescriptor, settlement_decimals: int) -> bytes:
        if not self.sale_bytecode:
            raise ConfigError("SALE_ARTIFACT_PATH is required to create a sale")
        constructor_args = abi_encode(
            SALE_CONSTRUCTOR_TYPES,
            [
                self.signer.address,
                descriptor.token_address,
                descriptor.settlement_asset_address,
                descriptor.token_decimals,
                price_base(descriptor, settlement_decimals),
                funding_amount_base(descriptor),
                descriptor.start_time,
                descriptor.end_time,
            ],
        )
        return hex_to_bytes(self.sale_bytecode) + constructor_args

    async def create(self, path: str) -> str:
        with self.store.lock(path):
            descriptor = self.store.load(path)
            if descriptor.sale_address:
                logger.info("sale already created at %s; not deploying again", descriptor.sale_address)
                return descriptor.sale_address

            settlement_decimals = await resolve_settlement_decimals(self.ledger, descriptor)
            init_code = self.build_sale_init_code(descriptor, settlement_decimals)
            tx_hash = await self.ledger.send_transaction(
                descriptor.factory_address,
                CREATE_SALE_SIG,
                [
                    self.signer.address,
                    init_code,
                    descriptor.token_address,
                    price_base(descriptor, settlement_decimals),
                    funding_amount_base(descriptor),
                    descriptor.start_time,
                    descriptor.end_time,
                ],
                self.signer,
            )
            logger.info("createSale submitted to factory %s: %s", descriptor.factory_address, tx_hash)
            receipt = await self.ledger.await_confirmation(tx_hash, self.tx_timeout_sec)
            return self._record_sale(path, descriptor, receipt, tx_hash)

    async def recover(self, path: str, tx_hash: str) -> str:
        """Finish a creation whose address could not be determined at the time."""
        tx_hash = tx_hash.strip().lower()
        with self.store.lock(path):
            descriptor = self.store.load(path)
            if descriptor.sale_address:
                if descriptor.creation_tx_hash == tx_hash:
                    return descriptor.sale_address
                raise IdempotencyViolation(
                    f"sale address already recorded as {descriptor.sale_address}; "
                    "refusing to overwrite it",
                    tx_hash=tx_hash,
                )
            if await self.ledger.get_receipt(tx_hash) is None:
                raise PreconditionError(
                    "no receipt for this transaction; check the hash or wait until it is mined",
                    tx_hash=tx_hash,
                )
            receipt = await self.ledger.await_confirmation(tx_hash, self.tx_timeout_sec)
            sent_to = receipt.get("to")
            if sent_to and normalize_address(sent_to) != descriptor.factory_address:
                raise PreconditionError(
                    f"transaction was sent to {sent_to}, not factory {descriptor.factory_address}",
                    tx_hash=tx_hash,
                )
            return self._record_sale(path, descriptor, receipt, tx_hash)

    def _record_sale(
        self,
        path: str,
        descriptor: LaunchDescriptor,
        receipt: Dict[str, Any],
        tx_hash: str,
    ) -> str:
        try:
            event = find_event(
                receipt.get("logs") or [],
                self.sale_created_event,
                address=descriptor.factory_address,
            )
        except EventDecodeError as e:
            raise ConsistencyError(
                f"createSale confirmed but its {self.sale_created_event.name} log is undecodable: {e}",
                tx_hash=tx_hash,
            ) from e
        if event is None:
            raise ConsistencyError(
                f"createSale confirmed but no {self.sale_created_event.name} event was emitted "
                "by the factory; determine the sale address from the transaction and run recover",
                tx_hash=tx_hash,
            )
        sale_address = normalize_address(event["sale"])
        updated = replace(
            descriptor,
            sale_address=sale_address,
            sale_created_block=parse_hex_int(receipt.get("blockNumber")),
            creation_tx_hash=tx_hash,
        )
        self.store.save(path, updated)
        logger.info("sale created at %s", sale_address)
        return sale_address

    async def fund(self, path: str) -> str:
        with self.store.lock(path):
            descriptor = self.store.load(path)
            if descriptor.state is SaleState.UNCONFIGURED:
                raise PreconditionError(f"no sale address in {path}; run create first")
            if descriptor.funded:
                raise IdempotencyViolation(
                    f"sale {descriptor.sale_address} is already funded",
                    tx_hash=descriptor.funding_tx_hash,
                )

            amount = funding_amount_base(descriptor)
            balance = await self.ledger.call(
                descriptor.token_address,
                ERC20_BALANCE_OF_SIG,
                [descriptor.sale_address],
                ["uint256"],
            )
            if balance >= amount:
                raise IdempotencyViolation(
                    f"sale {descriptor.sale_address} already holds {balance} base units "
                    f"(funding amount {amount}) without a recorded funding; refusing to transfer again"
                )
            if balance:
                logger.warning("sale %s already holds %d base units", descriptor.sale_address, balance)

            tx_hash = await self.ledger.send_transaction(
                descriptor.token_address,
                ERC20_TRANSFER_SIG,
                [descriptor.sale_address, amount],
                self.signer,
            )
            logger.info("funding transfer of %d base units submitted: %s", amount, tx_hash)
            await self.ledger.await_confirmation(tx_hash, self.tx_timeout_sec)
            self.store.save(path, replace(descriptor, funded=True, funding_tx_hash=tx_hash))
            logger.info("sale %s funded", descriptor.sale_address)
            return tx_hash

    async def run_step(self, step: str, path: str, *args: Any) -> StepResult:
        handlers = {"create": self.create, "fund": self.fund, "recover": self.recover}
        if step not in handlers:
            raise ValueError(f"unknown step: {step}")
        try:
            await handlers[step](path, *args)
        except LaunchpadError as e:
            return StepResult(step=step, state=self._state_of(path), tx_hash=e.tx_hash, error=e)
        descriptor = self.store.load(path)
        tx_hash = descriptor.funding_tx_hash if step == "fund" else descriptor.creation_tx_hash
        return StepResult(
            step=step,
            state=descriptor.state,
            sale_address=descriptor.sale_address,
            tx_hash=tx_hash,
        )

    def _state_of(self, path: str) -> Optional[SaleState]:
        try:
            return self.store.load(path).state
        except ConfigError:
            return None


@dataclass(frozen=True)
class PurchaseEvent:
    buyer: str
    settlement_amount_in: int
    fee_amount: int
    tokens_out_base: int
    block_number: int
    log_index: int
    tx_hash: Optional[str]


@dataclass(frozen=True)
class AggregatedStats:
    sale_address: str
    total_raised: int
    total_fees: int
    unique_buyer_count: int
    tokens_sold_base: int
    event_count: int
    from_block: int
    to_block: int
    events_tokens_out_base: int


class PurchaseAggregator:
    def __init__(self, ledger: LedgerClient, purchase_event: EventABI = BOUGHT_EVENT):
        self.ledger = ledger
        self.purchase_event = purchase_event

    async def iter_purchases(
        self, sale_address: str, from_block: int, to_block: int
    ) -> AsyncIterator[PurchaseEvent]:
        async for lg in self.ledger.iter_logs(sale_address, self.purchase_event, from_block, to_block):
            values = self.purchase_event.decode(lg)
            yield PurchaseEvent(
                buyer=values["buyer"],
                settlement_amount_in=int(values["usdcIn"]),
                fee_amount=int(values["feeUsdc"]),
                tokens_out_base=int(values["tokensOutBase"]),
                block_number=values["blockNumber"],
                log_index=values["logIndex"],
                tx_hash=values["transactionHash"],
            )

    async def compute(
        self, sale_address: str, from_block: int = 0, to_block: Optional[int] = None
    ) -> AggregatedStats:
        sale = normalize_address(sale_address)
        head = await self.ledger.head_block() if to_block is None else to_block
        if from_block > head:
            # the sale has no code at head yet, so there is nothing to read
            logger.info("%s starts at block %d, past head %d; no purchases yet", sale, from_block, head)
            return AggregatedStats(
                sale_address=sale,
                total_raised=0,
                total_fees=0,
                unique_buyer_count=0,
                tokens_sold_base=0,
                event_count=0,
                from_block=from_block,
                to_block=head,
                events_tokens_out_base=0,
            )

        total_raised = 0
        total_fees = 0
        tokens_out = 0
        event_count = 0
        buyers = set()
        seen = set()
        async for purchase in self.iter_purchases(sale, from_block, head):
            key = (purchase.tx_hash, purchase.block_number, purchase.log_index)
            if key in seen:
                continue
            seen.add(key)
            event_count += 1
            total_raised += purchase.settlement_amount_in
            total_fees += purchase.fee_amount
            tokens_out += purchase.tokens_out_base
            buyers.add(normalize_address(purchase.buyer))

        tokens_sold = await self.ledger.call(sale, TOTAL_SOLD_BASE_SIG, [], ["uint256"], block=head)
        if tokens_sold != tokens_out:
            logger.warning(
                "totalSoldBase=%d but purchase events account for %d base units (blocks %d-%d)",
                tokens_sold,
                tokens_out,
                from_block,
                head,
            )
        logger.info("aggregated %d purchase events for %s up to block %d", event_count, sale, head)
        return AggregatedStats(
            sale_address=sale,
            total_raised=total_raised,
            total_fees=total_fees,
            unique_buyer_count=len(buyers),
            tokens_sold_base=int(tokens_sold),
            event_count=event_count,
            from_block=from_block,
            to_block=head,
            events_tokens_out_base=tokens_out,
        )


def build_output(stats: AggregatedStats, settlement_decimals: int) -> Dict[str, Any]:
    """Analytics document; the human-unit fields are display-only."""
    return {
        "sale": to_checksum_address(stats.sale_address),
        "usdcRaised": decimal_to_str(raw_to_decimal(stats.total_raised, settlement_decimals), settlement_decimals),
        "platformFees": decimal_to_str(raw_to_decimal(stats.total_fees, settlement_decimals), settlement_decimals),
        "buyers": stats.unique_buyer_count,
        "tokensSoldBase": str(stats.tokens_sold_base),
        "usdcRaisedBase": str(stats.total_raised),
        "platformFeesBase": str(stats.total_fees),
        "events": stats.event_count,
        "fromBlock": stats.from_block,
        "toBlock": stats.to_block,
    }


def write_output(path: str, output: Dict[str, Any]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(output, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def format_report(output: Dict[str, Any]) -> str:
    return "\n".join(
        [
            "",
            "===== Launchpad Stats =====",
            f"Sale: {output['sale']}",
            f"Total Raised: {output['usdcRaised']}",
            f"Platform Fees: {output['platformFees']}",
            f"Unique Buyers: {output['buyers']}",
            f"Tokens Sold (base units): {output['tokensSoldBase']}",
            f"Blocks: {output['fromBlock']}-{output['toBlock']} ({output['events']} events)",
            "============================",
            "",
        ]
    )


def build_ledger(cfg: AppConfig, rpc: RPCClient) -> LedgerClient:
    return LedgerClient(
        rpc,
        confirmations=cfg.confirmations,
        head_tag=cfg.head_tag,
        logs_chunk_blocks=cfg.logs_chunk_blocks,
        min_logs_chunk_blocks=cfg.min_logs_chunk_blocks,
        poll_interval_sec=cfg.tx_poll_sec,
    )


def build_orchestrator(
    cfg: AppConfig, ledger: LedgerClient, store: LaunchDescriptorStore, need_bytecode: bool
) -> DeploymentOrchestrator:
    if not cfg.sender_address:
        raise ConfigError("SENDER_ADDRESS is required to submit transactions")
    bytecode = None
    if need_bytecode:
        if not cfg.sale_artifact_path:
            raise ConfigError("SALE_ARTIFACT_PATH is required to create a sale")
        bytecode = load_sale_bytecode(cfg.sale_artifact_path)
    return DeploymentOrchestrator(
        ledger,
        store,
        NodeSigner(cfg.sender_address),
        sale_bytecode=bytecode,
        sale_created_event=cfg.sale_created_event,
        tx_timeout_sec=cfg.tx_timeout_sec,
    )


async def run_aggregate(
    ledger: LedgerClient,
    store: LaunchDescriptorStore,
    descriptor_path: str,
    output_path: str,
    from_block: Optional[int] = None,
) -> Dict[str, Any]:
    descriptor = store.load(descriptor_path)
    if not descriptor.sale_address:
        raise PreconditionError(f"no sale address in {descriptor_path}; run create first")
    start = from_block if from_block is not None else (descriptor.sale_created_block or 0)
    stats = await PurchaseAggregator(ledger).compute(descriptor.sale_address, from_block=start)
    settlement_decimals = await resolve_settlement_decimals(ledger, descriptor)
    output = build_output(stats, settlement_decimals)
    write_output(output_path, output)
    return output


async def run_status(ledger: LedgerClient, store: LaunchDescriptorStore, descriptor_path: str) -> str:
    descriptor = store.load(descriptor_path)
    lines = [
        f"State: {descriptor.state.value}",
        f"Sale: {descriptor.sale_address or '-'}",
        f"Creation tx: {descriptor.creation_tx_hash or '-'}",
        f"Funding tx: {descriptor.funding_tx_hash or '-'}",
    ]
    if descriptor.sale_address:
        balance = await ledger.call(
            descriptor.token_address, ERC20_BALANCE_OF_SIG, [descriptor.sale_address], ["uint256"]
        )
        lines.append(f"Sale token balance: {balance} / {funding_amount_base(descriptor)} base units")
    return "\n".join(lines)


async def main_async(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_logging(cfg.log_level)
    store = LaunchDescriptorStore()
    async with RPCClient(
        cfg.http_rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
    ) as rpc:
        ledger = build_ledger(cfg, rpc)
        if args.command == "aggregate":
            output_path = args.output or cfg.analytics_output_path
            output = await run_aggregate(ledger, store, args.descriptor, output_path, args.from_block)
            print(format_report(output))
            print(f"Exported {output_path}")
            return 0
        if args.command == "status":
            print(await run_status(ledger, store, args.descriptor))
            return 0

        orchestrator = build_orchestrator(cfg, ledger, store, need_bytecode=args.command == "create")
        step_args = [args.tx_hash] if args.command == "recover" else []
        result = await orchestrator.run_step(args.command, args.descriptor, *step_args)

    if result.ok:
        if args.command == "fund":
            print(f"Funded sale {result.sale_address} (tx {result.tx_hash})")
        else:
            print(f"Sale address: {result.sale_address}")
            print(f"Saved into: {args.descriptor}")
        return 0

    err = result.error
    print(f"{args.command} failed ({err.kind}): {err}", file=sys.stderr)
    if err.kind == "uncertain":
        print(
            "The transaction may still confirm; the descriptor was not changed. "
            "Check the transaction before retrying.",
            file=sys.stderr,
        )
    elif err.kind == "consistency" and err.tx_hash:
        print(
            f"Resolve the sale address, then run: recover {args.descriptor} {err.tx_hash}",
            file=sys.stderr,
        )
    return err.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launchpad sale deployment, funding and analytics")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json); RPC_URL env overrides HTTP_RPC_URL",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("create", "deploy the sale through the factory and record its address"),
        ("fund", "transfer the cap in tokens to the sale"),
        ("status", "show descriptor state and the sale's token balance"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("descriptor", help="launch descriptor JSON path")
    p = sub.add_parser("recover", help="record the sale address from a confirmed createSale tx")
    p.add_argument("descriptor", help="launch descriptor JSON path")
    p.add_argument("tx_hash", help="createSale transaction hash")
    p = sub.add_parser("aggregate", help="summarize purchase events into analytics JSON")
    p.add_argument("descriptor", help="launch descriptor JSON path")
    p.add_argument("--output", default=None, help="analytics output path")
    p.add_argument("--from-block", type=int, default=None, help="first block to scan")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    try:
        code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        code = 130
    except LaunchpadError as e:
        print(f"{args.command} failed ({e.kind}): {e}", file=sys.stderr)
        code = e.exit_code
    except InvalidOperation as e:
        raise SystemExit(f"Decimal calculation error: {e}") from e
    raise SystemExit(code)


if __name__ == "__main__":
    main()
