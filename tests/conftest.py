"""Shared fixtures: a fake node, a ledger client over it, and descriptor files."""

import json

import pytest

from launchpad_ops import LaunchDescriptorStore, LedgerClient
from tests.fake_chain import FACTORY, TOKEN, USDC, FakeChain


def base_descriptor(**overrides):
    raw = {
        "factoryAddress": FACTORY,
        "tokenAddress": TOKEN,
        "settlementAssetAddress": USDC,
        "settlementDecimals": 6,
        "tokenDecimals": 6,
        "priceInSettlementPerToken": "0.05",
        "capTokensHuman": "1000000.5",
        "startTime": 1767225600,
        "endTime": 1767830400,
    }
    raw.update(overrides)
    return {k: v for k, v in raw.items() if v is not None}


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def ledger(chain):
    return LedgerClient(chain, logs_chunk_blocks=10, poll_interval_sec=0)


@pytest.fixture
def store():
    return LaunchDescriptorStore()


@pytest.fixture
def write_descriptor(tmp_path):
    def _write(**overrides):
        path = tmp_path / "launch.json"
        path.write_text(json.dumps(base_descriptor(**overrides), indent=2), encoding="utf-8")
        return str(path)

    return _write
