"""Tests for the directory backed cluster data store."""

import os
from pathlib import Path

import pytest

from validator_lab.exceptions import ConfigException
from validator_lab.manifest import Endpoints, GenesisConfig, NodeType
from validator_lab.store import DirectoryStore
from validator_lab.store.directory import LOCK_FILE
from validator_lab.store.store import GENESIS_RECORD


async def test_write_and_read(store: DirectoryStore) -> None:
    """Test writing and reading back a key."""
    assert not await store.exists("a/b.json")
    await store.write("a/b.json", b"one")
    assert await store.exists("a/b.json")
    assert await store.read("a/b.json") == b"one"
    await store.write("a/b.json", b"two")
    assert await store.read("a/b.json") == b"two"


async def test_write_once(store: DirectoryStore) -> None:
    """Test write-once keys are never replaced."""
    assert await store.write_once("identity.json", b"first")
    assert not await store.write_once("identity.json", b"second")
    assert await store.read("identity.json") == b"first"


async def test_remove(store: DirectoryStore) -> None:
    await store.write("dir/one", b"1")
    await store.write("file", b"2")
    await store.remove("dir")
    await store.remove("file")
    await store.remove("missing")
    assert not await store.exists("dir/one")
    assert not await store.exists("file")


def test_path_escape(store: DirectoryStore) -> None:
    """Test keys may not point outside the data path."""
    with pytest.raises(ValueError, match="escapes"):
        store.path("../outside")


def test_not_a_directory(tmp_path: Path) -> None:
    path = tmp_path / "file"
    path.write_text("")
    with pytest.raises(ConfigException, match="not a directory"):
        DirectoryStore(path)


def test_account_keys(store: DirectoryStore) -> None:
    assert store.account_key(NodeType.BOOTSTRAP) == "bootstrap-accounts"
    assert (
        store.account_key(NodeType.VALIDATOR, "validator-service-v1-0")
        == "validator-accounts/validator-service-v1-0"
    )
    assert store.docker_key(NodeType.RPC, "v1") == "docker-build/rpc-node-v1"


def test_lock_excludes_concurrent_runs(store: DirectoryStore) -> None:
    """Test a second holder of the lock is rejected while the first is alive."""
    with store.lock():
        assert (store.root / LOCK_FILE).read_text() == str(os.getpid())
        with pytest.raises(ConfigException, match="in use"):
            with store.lock():
                pass
    assert not (store.root / LOCK_FILE).exists()


def test_stale_lock(store: DirectoryStore) -> None:
    """Test a lock left behind by a process that is gone is taken over."""
    (store.root / LOCK_FILE).write_text("")
    with store.lock():
        assert (store.root / LOCK_FILE).read_text() == str(os.getpid())


async def test_genesis_record(store: DirectoryStore) -> None:
    assert not await store.has_genesis()
    assert await store.read_genesis_config() is None
    config = GenesisConfig(slots_per_epoch=150)
    await store.write_once(GENESIS_RECORD, config.yaml().encode())
    assert await store.has_genesis()
    assert await store.read_genesis_config() == config


async def test_endpoints_record(store: DirectoryStore) -> None:
    """Test endpoints persist for later joins."""
    assert await store.read_endpoints() is None
    endpoints = Endpoints.for_bootstrap("lab", "bootstrap-validator-service", 7)
    await store.write_endpoints(endpoints)
    assert await store.read_endpoints() == endpoints

    reopened = DirectoryStore(store.root)
    assert await reopened.read_endpoints() == endpoints
