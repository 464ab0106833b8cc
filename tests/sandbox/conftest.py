import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from codeblocking.sandbox.models import SandboxConfig
from codeblocking.sandbox.ports import PortAllocator
from codeblocking.sandbox.manager import ContainerManager
from codeblocking.sandbox.session import TerminalSessionManager
from codeblocking.workspace import WorkspaceManager

from fakes import FakeDockerManager


@pytest.fixture
def sandbox_config():
    """端口区间 3100 起，不检查宿主机端口占用"""
    return SandboxConfig(port_range_start=3100, port_range_size=1000, check_host_ports=False)


@pytest.fixture
def fake_docker():
    return FakeDockerManager()


@pytest.fixture
def container_manager(sandbox_config, fake_docker):
    return ContainerManager(config=sandbox_config, docker_manager=fake_docker)


@pytest.fixture
def workspace(tmp_path):
    return WorkspaceManager(root=str(tmp_path / "workspaces"))


@pytest.fixture
def terminals(container_manager, workspace):
    return TerminalSessionManager(container_manager, workspace=workspace)


@pytest.fixture
def small_allocator():
    return PortAllocator(start=5000, size=3, check_host=False)
