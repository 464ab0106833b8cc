"""
沙盒数据模型

定义容器信息、终端 Session 状态和沙盒配置等数据结构。
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)


# 容器内开发服务器常用端口，每个容器固定映射 11 个
CONTAINER_PORT_START = 3000
CONTAINER_PORT_END = 3010


class Environment(str, Enum):
    """项目运行环境，决定容器使用的基础镜像"""
    PYTHON = "python"
    NODE = "node"
    JAVA = "java"
    BASE = "base"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Environment":
        """
        解析环境名称

        无法识别或为空时回退到 BASE。
        """
        if isinstance(value, Environment):
            return value
        if not value:
            return cls.BASE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown environment {value!r}, falling back to base")
            return cls.BASE


DEFAULT_IMAGES: Dict[str, str] = {
    Environment.PYTHON.value: "codeblocking/python",
    Environment.NODE.value: "codeblocking/node",
    Environment.JAVA.value: "codeblocking/java",
    Environment.BASE.value: "codeblocking/base",
}


class ContainerKey(NamedTuple):
    """Registry 键：(user_id, project_id)"""
    user_id: str
    project_id: str

    def __str__(self) -> str:
        return f"{self.user_id}/{self.project_id}"


class ContainerState(Enum):
    """容器状态枚举"""
    CREATING = "creating"    # 正在创建容器
    RUNNING = "running"      # 运行中
    STOPPING = "stopping"    # 正在停止
    ABSENT = "absent"        # 已不存在


@dataclass
class ContainerInfo:
    """
    容器信息

    每个存活的沙盒容器对应一个实例。ports 为容器端口到宿主机端口的有序映射。
    """
    container_id: str
    environment: Environment
    ports: Dict[int, int]
    project_path: str
    user_id: str = ""
    project_id: str = ""
    state: ContainerState = ContainerState.RUNNING
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> ContainerKey:
        return ContainerKey(self.user_id, self.project_id)

    @property
    def short_id(self) -> str:
        return self.container_id[:12]

    def host_ports(self) -> list:
        """所有占用的宿主机端口"""
        return list(self.ports.values())

    def ports_payload(self) -> Dict[str, int]:
        """转换为可 JSON 序列化的端口映射（键为字符串）"""
        return {str(container_port): host_port for container_port, host_port in self.ports.items()}

    def to_dict(self) -> dict:
        """转换为字典"""
        return {
            "container_id": self.container_id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "environment": self.environment.value,
            "ports": self.ports_payload(),
            "project_path": self.project_path,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
        }


class TerminalState(Enum):
    """终端 Session 状态枚举"""
    ATTACHING = "attaching"  # 正在创建 exec 并连接流
    OPEN = "open"            # 已连接，正在转发输入输出
    CLOSING = "closing"      # 正在关闭
    CLOSED = "closed"        # 已关闭


@dataclass
class SandboxConfig:
    """
    沙盒配置

    从 config.yaml 的 sandbox 段加载。
    """
    images: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_IMAGES))
    port_range_start: int = 3100
    port_range_size: int = 1000
    container_port_start: int = CONTAINER_PORT_START
    container_port_end: int = CONTAINER_PORT_END
    check_host_ports: bool = True
    memory_limit: str = "512m"
    cpu_shares: int = 256
    stop_timeout: int = 5
    orphan_stop_timeout: int = 1
    label_prefix: str = "codeblocking"
    container_prefix: str = "codeblocking"
    shell: str = "/bin/bash"
    workdir: str = "/workspace"
    docker_socket: Optional[str] = None

    @property
    def container_ports(self) -> range:
        return range(self.container_port_start, self.container_port_end + 1)

    @property
    def user_label(self) -> str:
        return f"{self.label_prefix}.userId"

    @property
    def project_label(self) -> str:
        return f"{self.label_prefix}.projectId"

    def image_for(self, environment: Environment) -> str:
        """环境到镜像的映射，缺失时使用 base 镜像"""
        image = self.images.get(environment.value)
        if image:
            return image
        return self.images.get(Environment.BASE.value, DEFAULT_IMAGES[Environment.BASE.value])

    @classmethod
    def from_dict(cls, config: dict) -> "SandboxConfig":
        """从字典创建配置"""
        images = dict(DEFAULT_IMAGES)
        images.update(config.get("images") or {})
        return cls(
            images=images,
            port_range_start=config.get("port_range_start", 3100),
            port_range_size=config.get("port_range_size", 1000),
            container_port_start=config.get("container_port_start", CONTAINER_PORT_START),
            container_port_end=config.get("container_port_end", CONTAINER_PORT_END),
            check_host_ports=config.get("check_host_ports", True),
            memory_limit=config.get("memory_limit", "512m"),
            cpu_shares=config.get("cpu_shares", 256),
            stop_timeout=config.get("stop_timeout", 5),
            orphan_stop_timeout=config.get("orphan_stop_timeout", 1),
            label_prefix=config.get("label_prefix", "codeblocking"),
            container_prefix=config.get("container_prefix", "codeblocking"),
            shell=config.get("shell", "/bin/bash"),
            workdir=config.get("workdir", "/workspace"),
            docker_socket=config.get("docker_socket"),
        )

    @classmethod
    def load_from_config(cls) -> "SandboxConfig":
        """从项目配置文件加载"""
        from codeblocking.config import get_config
        config = get_config()
        sandbox_config = config.get("sandbox", {})
        return cls.from_dict(sandbox_config)


@dataclass
class TerminalSession:
    """
    终端 Session

    每个请求终端的客户端 socket 对应一个实例，由该 socket 独占。
    exec_id 与 stream 总是一起创建、一起销毁。
    """
    sid: str
    user_id: str
    project_id: str
    container_id: str
    exec_id: Optional[str] = None
    stream: Any = None
    state: TerminalState = TerminalState.ATTACHING
    created_at: datetime = field(default_factory=datetime.now)
    reader_task: Any = field(default=None, repr=False)

    @property
    def key(self) -> ContainerKey:
        return ContainerKey(self.user_id, self.project_id)

    def is_open(self) -> bool:
        return self.state == TerminalState.OPEN

    def to_dict(self) -> dict:
        return {
            "sid": self.sid,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "container_id": self.container_id,
            "exec_id": self.exec_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
        }
