"""
Shared test fixtures for the Xedis test suite.
"""
import json
import logging

import pytest

from xedis.config import XedisConfig
from xedis.core import XedisStore
from xedis.storage.journal import encode_entry, parse_journal

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def data_dir(tmp_path):
    """Temporary persistence directory"""
    return tmp_path / "xedis"


@pytest.fixture
def config(data_dir):
    """Store configuration without the snapshot timer"""
    return XedisConfig(
        name="test",
        data_dir=str(data_dir),
        snapshot_interval=0,
        fsync_policy="always",
        log_level="WARNING",
    )


@pytest.fixture
async def store(config):
    """Started store, stopped after the test"""
    store = XedisStore(config)
    await store.start()
    yield store
    await store.stop()


@pytest.fixture
def diagnostics():
    """Collects diagnostic events"""
    return []


def write_journal(path, entries, tail=b""):
    """Write a journal file from (key, Record-or-None) pairs plus raw tail bytes"""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = b"".join(encode_entry(key, record) for key, record in entries)
    path.write_bytes(data + tail)


def write_snapshot(path, records):
    """Write a snapshot file from a key -> Record mapping"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({key: record.to_dict() for key, record in records.items()}))


def journal_state(path):
    """Replay a journal file into a key -> Record mapping"""
    return parse_journal(path.read_bytes()).records
