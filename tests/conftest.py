"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
import uuid
from pathlib import Path

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bandsync.config import Config
from bandsync.store.local_store import LocalStore
from bandsync.sync.change_tracker import ChangeTracker
from bandsync.sync.sync_manager import CloudSyncManager
from bandsync.sync_config import SyncSettings
from bandsync.transport.local_folder import LocalFolderTransport


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.bandsync."""
    monkeypatch.setenv("BANDSYNC_HOME", str(tmp_path / "home"))
    Config.reset()
    yield
    Config.reset()


@pytest.fixture
def fast_settings():
    """Sync settings without retry delays."""
    return SyncSettings(initial_retry_delay_seconds=0, max_retry_attempts=2)


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "device.db")


@pytest.fixture
def tracker(store):
    return ChangeTracker(store, "device-a", "Alice's iPad")


@pytest.fixture
def cloud_dir(tmp_path):
    path = tmp_path / "cloud"
    path.mkdir()
    return path


@pytest.fixture
def transport(cloud_dir):
    return LocalFolderTransport(cloud_dir)


@pytest.fixture
def make_device(tmp_path, cloud_dir, fast_settings):
    """Factory for sync managers that share one cloud folder."""

    def factory(device_id: str, device_name: str = None, settings: SyncSettings = None) -> CloudSyncManager:
        store = LocalStore(tmp_path / f"{device_id}.db")
        return CloudSyncManager(
            store,
            LocalFolderTransport(cloud_dir),
            device_id,
            device_name or device_id,
            settings=settings or fast_settings,
        )

    return factory


@pytest.fixture
def group_id():
    return str(uuid.uuid4())
