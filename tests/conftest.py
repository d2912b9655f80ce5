"""Shared test fixtures for k3s_admin tests."""

from unittest import mock

import pytest

from fakes import FakeClock, SimulatedCluster, build_services
from k3s_admin.models import CommandResult


@pytest.fixture
def cluster():
    """Three control-plane nodes and two workers, all healthy."""
    return SimulatedCluster.build(control_plane=3, workers=2)


@pytest.fixture
def services(cluster):
    return build_services(cluster)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def mock_executor():
    """RemoteExecutor double returning success with empty output."""
    executor = mock.MagicMock()
    executor.run.return_value = CommandResult(output="", exit_code=0)
    return executor


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch("k3s_admin.proxmox_api.ProxmoxAPI") as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.get.return_value = [
            {"node": "pve", "status": "online"},
            {"node": "still-fawn", "status": "online"},
            {"node": "chief-horse", "status": "offline"},
        ]
        yield proxmox


@pytest.fixture
def clean_env(monkeypatch):
    """Keep the developer's .env and shell from leaking into config tests."""
    for var in ("API_TOKEN", "PROXMOX_API_HOST", "SSH_KEY_PATH", "SSH_USER"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("k3s_admin.config.load_dotenv", lambda *args, **kwargs: False)
