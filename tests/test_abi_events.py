"""Event declarations, typed log decoding and call encoding."""

import pytest
from eth_abi import encode as abi_encode

from launchpad_ops import (
    BOUGHT_EVENT,
    ConfigError,
    EventABI,
    EventDecodeError,
    encode_call,
    find_event,
    function_arg_types,
    topic_address,
)
from tests.fake_chain import BUYER_A, FACTORY, SALE, SALE_CREATED_EVENT, SENDER, TOKEN, bought_log, sale_created_log

TRANSFER_TOPIC0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def test_parse_declaration_builds_canonical_signature():
    event = EventABI.parse("Transfer(address indexed from, address indexed to, uint256 value)")
    assert event.name == "Transfer"
    assert event.signature == "Transfer(address,address,uint256)"
    assert event.topic0 == TRANSFER_TOPIC0
    assert [i.indexed for i in event.inputs] == [True, True, False]
    assert event.input_names() == ["from", "to", "value"]


def test_parse_unnamed_inputs_get_positional_names():
    event = EventABI.parse("Ping(uint256,address indexed)")
    assert event.input_names() == ["arg0", "arg1"]
    assert event.inputs[1].indexed


@pytest.mark.parametrize("decl", ["", "NoParens", "Bad(uint256 a b c)", "X(uint256,,address)"])
def test_parse_rejects_malformed_declarations(decl):
    with pytest.raises(ConfigError):
        EventABI.parse(decl)


def test_bought_event_decodes_buyer_and_amounts():
    lg = bought_log(SALE, BUYER_A.upper().replace("0X", "0x"), 100_000_000, 2_000_000, 5, block=7, index=3)
    values = BOUGHT_EVENT.decode(lg)
    assert values["buyer"] == BUYER_A
    assert values["usdcIn"] == 100_000_000
    assert values["feeUsdc"] == 2_000_000
    assert values["tokensOutBase"] == 5
    assert values["blockNumber"] == 7
    assert values["logIndex"] == 3
    assert values["address"] == SALE


def test_decode_handles_amounts_beyond_64_bits():
    big = 2**200 + 17
    values = BOUGHT_EVENT.decode(bought_log(SALE, BUYER_A, big, big, big, block=1))
    assert values["usdcIn"] == big


def test_decode_rejects_truncated_data():
    lg = bought_log(SALE, BUYER_A, 1, 1, 1, block=1)
    lg["data"] = lg["data"][:40]
    with pytest.raises(EventDecodeError):
        BOUGHT_EVENT.decode(lg)


def test_decode_rejects_wrong_topic_count():
    lg = bought_log(SALE, BUYER_A, 1, 1, 1, block=1)
    lg["topics"] = lg["topics"][:1]
    with pytest.raises(EventDecodeError):
        BOUGHT_EVENT.decode(lg)


def test_find_event_returns_none_when_absent():
    logs = [bought_log(SALE, BUYER_A, 1, 1, 1, block=1)]
    assert find_event(logs, SALE_CREATED_EVENT) is None


def test_find_event_filters_by_emitter():
    lg = sale_created_log(FACTORY, SALE, SENDER, TOKEN, block=3)
    assert find_event([lg], SALE_CREATED_EVENT, address=TOKEN) is None
    found = find_event([lg], SALE_CREATED_EVENT, address=FACTORY)
    assert found["sale"] == SALE
    assert found["owner"] == SENDER


def test_find_event_propagates_decode_errors_for_matching_topic():
    lg = sale_created_log(FACTORY, SALE, SENDER, TOKEN, block=3)
    lg["topics"] = lg["topics"][:2]
    with pytest.raises(EventDecodeError):
        find_event([lg], SALE_CREATED_EVENT)


def test_indexed_uint_topic_is_decoded():
    event = EventABI.parse("Tick(uint256 indexed n)")
    lg = {
        "address": SALE,
        "topics": [event.topic0, "0x" + abi_encode(["uint256"], [42]).hex()],
        "data": "0x",
        "blockNumber": "0x1",
        "logIndex": "0x0",
    }
    assert event.decode(lg)["n"] == 42


def test_encode_call_uses_keccak_selector():
    data = encode_call("transfer(address,uint256)", [SALE, 5])
    assert data.startswith("0xa9059cbb")
    assert data[10:] == abi_encode(["address", "uint256"], [SALE, 5]).hex()
    assert encode_call("decimals()", []) == "0x313ce567"


def test_encode_call_checks_arity():
    with pytest.raises(ValueError):
        encode_call("balanceOf(address)", [])


def test_function_arg_types():
    assert function_arg_types("totalSoldBase()") == []
    assert function_arg_types("createSale(address,bytes,uint256)") == ["address", "bytes", "uint256"]


def test_topic_address_pads_to_32_bytes():
    topic = topic_address(BUYER_A)
    assert len(topic) == 66
    assert topic.endswith(BUYER_A[2:])
