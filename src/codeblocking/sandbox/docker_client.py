"""
Docker 客户端封装

提供沙盒容器的创建、启动、停止、删除，以及容器内交互式 exec 的管理。
这里的方法都是同步阻塞的，异步调用方通过 asyncio.to_thread 调用。
"""

import os
import socket
import asyncio
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import docker
from docker.errors import NotFound

from .models import SandboxConfig

logger = logging.getLogger(__name__)


def detect_docker_socket() -> Optional[str]:
    """
    探测 Docker socket 路径

    Docker Desktop (Linux) 使用 ~/.docker/desktop/docker.sock，
    存在时优先使用；否则返回 None，交给 docker.from_env() 处理。
    """
    desktop_socket = Path.home() / ".docker" / "desktop" / "docker.sock"
    if desktop_socket.exists():
        return str(desktop_socket)
    return None


class ExecStream:
    """
    exec 实例的双向字节流

    包装 exec_start(socket=True) 返回的原始 socket，读写放到线程池中执行。
    """

    def __init__(self, raw_socket: Any):
        self._raw = raw_socket
        # unix socket 时返回的是 socket.SocketIO，真正的 socket 在 _sock 上
        self._sock = getattr(raw_socket, "_sock", raw_socket)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, size: int = 4096) -> bytes:
        """读取一段输出，返回空字节表示流已结束"""
        if self._closed:
            return b""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sock.recv, size)

    async def write(self, data: Union[str, bytes]) -> None:
        if self._closed:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._sock.sendall, data)

    def close(self) -> None:
        """关闭流，阻塞中的 read 会随之返回"""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except (OSError, AttributeError):
            pass
        try:
            self._raw.close()
        except OSError as e:
            logger.debug(f"Error closing exec socket: {e}")


class DockerManager:
    """
    Docker 管理器

    封装 docker-py 操作，管理沙盒容器和 exec 实例的生命周期。
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        """
        初始化 Docker 管理器

        Args:
            config: 沙盒配置，如果不指定则使用默认配置
        """
        self.config = config or SandboxConfig()
        self._client: Optional[docker.DockerClient] = None

    @property
    def client(self) -> docker.DockerClient:
        """获取 Docker 客户端（懒加载）"""
        if self._client is None:
            socket_path = self.config.docker_socket
            if not socket_path and not os.environ.get("DOCKER_HOST"):
                socket_path = detect_docker_socket()

            if socket_path:
                self._client = docker.DockerClient(base_url=f"unix://{socket_path}")
                logger.info(f"Docker client initialized ({socket_path})")
            else:
                self._client = docker.from_env()
                logger.info("Docker client initialized")
        return self._client

    def create_container(
        self,
        image: str,
        name: str,
        project_path: str,
        ports: Dict[int, int],
        labels: Dict[str, str],
    ) -> str:
        """
        创建沙盒容器（不启动）

        Args:
            image: 镜像名称
            name: 容器名称
            project_path: 宿主机项目目录，以读写方式挂载到工作目录
            ports: 容器端口 -> 宿主机端口
            labels: 用于后续查找的标签

        Returns:
            容器 ID
        """
        container_config = {
            "image": image,
            "name": name,
            "command": [self.config.shell],
            "tty": True,
            "stdin_open": True,
            "detach": True,
            "working_dir": self.config.workdir,
            "volumes": {
                project_path: {"bind": self.config.workdir, "mode": "rw"}
            },
            "ports": {
                f"{container_port}/tcp": host_port
                for container_port, host_port in ports.items()
            },
            "mem_limit": self.config.memory_limit,
            "cpu_shares": self.config.cpu_shares,
            "labels": labels,
        }

        container = self.client.containers.create(**container_config)
        logger.info(f"Created container: {name} ({container.short_id}) from {image}")

        return container.id

    def start_container(self, container_id: str) -> None:
        container = self.client.containers.get(container_id)
        container.start()
        logger.info(f"Started container: {container.name} ({container.short_id})")

    def is_running(self, container_id: str) -> bool:
        """
        检查容器是否仍在运行

        容器不存在时返回 False，其余 Docker 错误向上抛出。
        """
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        return bool(container.attrs.get("State", {}).get("Running", False))

    def stop_container(self, container_id: str, timeout: int = 5) -> bool:
        """
        停止容器

        Args:
            container_id: 容器 ID
            timeout: 等待优雅退出的秒数，超时后强制 kill

        Returns:
            容器是否存在
        """
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        container.stop(timeout=timeout)
        logger.info(f"Stopped container: {container.short_id}")
        return True

    def remove_container(self, container_id: str, force: bool = True) -> bool:
        """
        删除容器

        Returns:
            容器是否存在
        """
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        container.remove(force=force, v=True)  # v=True 删除关联的匿名卷
        logger.info(f"Removed container: {container.short_id}")
        return True

    def list_labeled_containers(self, label: str) -> List[str]:
        """
        列出带有指定标签的所有容器（包括已停止的）

        Returns:
            容器 ID 列表
        """
        containers = self.client.containers.list(
            all=True,
            filters={"label": label}
        )
        return [container.id for container in containers]

    def create_exec(
        self,
        container_id: str,
        cmd: List[str],
        workdir: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        在容器内创建交互式 exec（启用 tty，连接 stdin/stdout/stderr）

        Returns:
            exec ID
        """
        exec_instance = self.client.api.exec_create(
            container_id,
            cmd,
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
            workdir=workdir,
            environment=environment,
        )
        return exec_instance["Id"]

    def start_exec(self, exec_id: str) -> ExecStream:
        raw_socket = self.client.api.exec_start(exec_id, tty=True, socket=True)
        return ExecStream(raw_socket)

    def resize_exec(self, exec_id: str, cols: int, rows: int) -> None:
        self.client.api.exec_resize(exec_id, height=rows, width=cols)

    def exec_exit_code(self, exec_id: str) -> Optional[int]:
        """获取 exec 退出码，仍在运行或无法获取时返回 None"""
        try:
            data = self.client.api.exec_inspect(exec_id)
        except NotFound:
            return None
        if data.get("Running"):
            return None
        return data.get("ExitCode")

    def ping(self) -> bool:
        """
        测试 Docker 连接

        Returns:
            是否连接成功
        """
        try:
            self.client.ping()
            return True
        except Exception as e:
            logger.error(f"Docker ping failed: {e}")
            return False

    def get_info(self) -> Dict[str, Any]:
        return self.client.info()
