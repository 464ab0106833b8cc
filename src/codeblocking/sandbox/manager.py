"""
ContainerManager 主类

整合 DockerManager、PortAllocator 和 ContainerRegistry，
为每个 (user_id, project_id) 维护一个沙盒容器。
"""

import os
import uuid
import asyncio
import logging
from typing import Optional, Dict, List, Union

from .models import (
    SandboxConfig,
    ContainerInfo,
    ContainerKey,
    ContainerState,
    Environment,
)
from .errors import ContainerCreateFailed
from .ports import PortAllocator
from .registry import ContainerRegistry
from .docker_client import DockerManager

logger = logging.getLogger(__name__)


class ContainerManager:
    """
    容器生命周期管理器

    主要功能：
    - 按需创建容器，同一个项目的并发请求只会创建一个容器
    - 停止、删除容器并回收端口
    - 进程退出时清理所有容器，包括上一个进程遗留的孤儿容器

    容器状态: absent -> creating -> running -> stopping -> absent。
    已退出的容器不会原地重启，下次 ensure_container 会创建新容器。
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        docker_manager: Optional[DockerManager] = None,
        port_allocator: Optional[PortAllocator] = None,
    ):
        """
        初始化容器管理器

        Args:
            config: 沙盒配置，如果不指定则使用默认配置
            docker_manager: Docker 管理器，测试时可替换
            port_allocator: 端口分配器，默认按配置的端口区间创建
        """
        self.config = config or SandboxConfig()
        self.docker_manager = docker_manager or DockerManager(self.config)
        self.port_allocator = port_allocator or PortAllocator(
            start=self.config.port_range_start,
            size=self.config.port_range_size,
            check_host=self.config.check_host_ports,
        )
        self.registry = ContainerRegistry(
            self.docker_manager,
            on_vanished=self._reclaim_vanished,
        )

        # 正在创建中的容器，同一个键的后续请求等待同一个任务
        self._pending: Dict[ContainerKey, asyncio.Task] = {}

    def _container_name(self) -> str:
        return f"{self.config.container_prefix}-{uuid.uuid4().hex[:12]}"

    def _labels(self, key: ContainerKey) -> Dict[str, str]:
        return {
            self.config.user_label: key.user_id,
            self.config.project_label: key.project_id,
        }

    async def ensure_container(
        self,
        user_id: str,
        project_id: str,
        environment: Union[Environment, str, None],
        project_path: str,
    ) -> ContainerInfo:
        """
        获取或创建项目的沙盒容器

        Args:
            user_id: 用户 ID
            project_id: 项目 ID
            environment: 运行环境，无法识别时使用 base 镜像
            project_path: 宿主机项目目录

        Returns:
            存活容器的 ContainerInfo

        Raises:
            NoPortsAvailable: 端口池耗尽
            ContainerCreateFailed: Docker 创建或启动容器失败
        """
        key = ContainerKey(user_id, project_id)

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._ensure(key, Environment.parse(environment), project_path)
            )
            self._pending[key] = task
            task.add_done_callback(lambda t: self._finish_pending(key, t))
        else:
            logger.debug(f"Waiting for in-flight container creation for {key}")

        # 调用方被取消时，创建任务继续执行，容器留给后续请求复用
        return await asyncio.shield(task)

    def _finish_pending(self, key: ContainerKey, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # 所有调用方都已取消时避免 "exception was never retrieved"
            task.exception()

    async def _ensure(
        self,
        key: ContainerKey,
        environment: Environment,
        project_path: str,
    ) -> ContainerInfo:
        existing = await self.registry.lookup(key)
        if existing is not None:
            return existing
        return await self._create(key, environment, project_path)

    async def _create(
        self,
        key: ContainerKey,
        environment: Environment,
        project_path: str,
    ) -> ContainerInfo:
        image = self.config.image_for(environment)
        container_ports = list(self.config.container_ports)

        host_ports = self.port_allocator.acquire_many(len(container_ports))
        ports = dict(zip(container_ports, host_ports))
        absolute_path = os.path.abspath(project_path)

        logger.info(
            f"Creating container for {key} from {image} "
            f"(ports {host_ports[0]}-{host_ports[-1]})"
        )

        container_id: Optional[str] = None
        try:
            os.makedirs(absolute_path, exist_ok=True)

            container_id = await asyncio.to_thread(
                self.docker_manager.create_container,
                image=image,
                name=self._container_name(),
                project_path=absolute_path,
                ports=ports,
                labels=self._labels(key),
            )
            await asyncio.to_thread(self.docker_manager.start_container, container_id)

        except Exception as e:
            logger.error(f"Failed to create container for {key}: {e}")
            self.port_allocator.release_many(host_ports)
            if container_id is not None:
                await self._remove_quietly(container_id)
            raise ContainerCreateFailed(f"Failed to create container: {e}") from e

        info = ContainerInfo(
            container_id=container_id,
            environment=environment,
            ports=ports,
            project_path=absolute_path,
            user_id=key.user_id,
            project_id=key.project_id,
            state=ContainerState.RUNNING,
        )
        self.registry.put(key, info)

        logger.info(f"Container started for {key}: {info.short_id}")
        return info

    async def _remove_quietly(self, container_id: str) -> None:
        try:
            await asyncio.to_thread(self.docker_manager.remove_container, container_id)
        except Exception as e:
            logger.warning(f"Error removing container {container_id[:12]}: {e}")

    async def _reclaim_vanished(self, info: ContainerInfo) -> None:
        """容器已在外部退出：归还端口并删除残留容器"""
        self.port_allocator.release_many(info.host_ports())
        await self._remove_quietly(info.container_id)

    async def stop_container(self, user_id: str, project_id: str) -> None:
        """
        停止并删除项目容器

        没有登记的容器时什么都不做。Docker 报错只记录日志，
        端口和注册表条目无论如何都会被回收。
        """
        key = ContainerKey(user_id, project_id)
        info = self.registry.remove(key)
        if info is None:
            return

        info.state = ContainerState.STOPPING
        logger.info(f"Stopping container {info.short_id} for {key}")

        try:
            await asyncio.to_thread(
                self.docker_manager.stop_container,
                info.container_id,
                self.config.stop_timeout,
            )
        except Exception as e:
            logger.warning(f"Error stopping container {info.short_id}: {e}")

        await self._remove_quietly(info.container_id)

        self.port_allocator.release_many(info.host_ports())
        info.state = ContainerState.ABSENT

    async def cleanup_orphan_containers(self) -> int:
        """
        清理孤儿容器

        删除所有带有本服务标签、但不在注册表中的容器
        （例如上一个进程遗留的容器）。单个容器清理失败不会中断整个过程。

        Returns:
            清理的容器数量
        """
        try:
            container_ids = await asyncio.to_thread(
                self.docker_manager.list_labeled_containers,
                self.config.user_label,
            )
        except Exception as e:
            logger.warning(f"Failed to list sandbox containers: {e}")
            return 0

        tracked = self.registry.container_ids()
        orphan_count = 0
        for container_id in container_ids:
            if container_id in tracked:
                continue
            try:
                await asyncio.to_thread(
                    self.docker_manager.stop_container,
                    container_id,
                    self.config.orphan_stop_timeout,
                )
                await asyncio.to_thread(self.docker_manager.remove_container, container_id)
                orphan_count += 1
                logger.info(f"Cleaned up orphaned container: {container_id[:12]}")
            except Exception as e:
                logger.warning(f"Error cleaning up orphaned container {container_id[:12]}: {e}")

        if orphan_count > 0:
            logger.info(f"Cleaned up {orphan_count} orphan containers")

        return orphan_count

    async def cleanup_all(self) -> int:
        """
        清理所有容器

        先等待正在创建的容器完成登记，再停止注册表中的所有容器，
        最后清理孤儿容器。

        Returns:
            清理的孤儿容器数量
        """
        logger.info("Cleaning up all containers...")

        pending = list(self._pending.values())
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight container creations")
            await asyncio.gather(*pending, return_exceptions=True)

        for key in self.registry.keys():
            await self.stop_container(key.user_id, key.project_id)

        return await self.cleanup_orphan_containers()

    def get_ports(self, user_id: str, project_id: str) -> Optional[Dict[int, int]]:
        """获取容器端口映射（只读，不检查存活）"""
        info = self.registry.get(ContainerKey(user_id, project_id))
        if info is None:
            return None
        return dict(info.ports)

    def get_container_info(self, user_id: str, project_id: str) -> Optional[ContainerInfo]:
        return self.registry.get(ContainerKey(user_id, project_id))

    def list_containers(self) -> List[dict]:
        return [info.to_dict() for _, info in self.registry.items()]

    async def initialize(self) -> None:
        """
        初始化容器管理器

        执行启动时的初始化操作：
        - 检查 Docker 连接
        - 清理上一个进程遗留的孤儿容器
        """
        logger.info("Initializing ContainerManager...")

        if not await asyncio.to_thread(self.docker_manager.ping):
            raise RuntimeError("Failed to connect to Docker daemon")

        await self.cleanup_orphan_containers()

        logger.info("ContainerManager initialized successfully")
