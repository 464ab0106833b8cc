"""
CodeBlocking 沙盒模块

为每个 (用户, 项目) 提供一个 Docker 容器，并在容器内提供交互式终端。
"""

from .models import (
    Environment,
    ContainerKey,
    ContainerInfo,
    ContainerState,
    TerminalSession,
    TerminalState,
    SandboxConfig,
)
from .errors import SandboxError, NoPortsAvailable, ContainerCreateFailed, ExecFailed
from .ports import PortAllocator
from .registry import ContainerRegistry
from .docker_client import DockerManager, ExecStream
from .manager import ContainerManager
from .session import TerminalSessionManager

__all__ = [
    "Environment",
    "ContainerKey",
    "ContainerInfo",
    "ContainerState",
    "TerminalSession",
    "TerminalState",
    "SandboxConfig",
    "SandboxError",
    "NoPortsAvailable",
    "ContainerCreateFailed",
    "ExecFailed",
    "PortAllocator",
    "ContainerRegistry",
    "DockerManager",
    "ExecStream",
    "ContainerManager",
    "TerminalSessionManager",
]
