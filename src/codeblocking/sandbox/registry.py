"""
容器注册表

维护 (user_id, project_id) 到存活容器的映射，并与 Docker 的实际状态对账。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from .models import ContainerInfo, ContainerKey, ContainerState

logger = logging.getLogger(__name__)

VanishedHook = Callable[[ContainerInfo], Awaitable[None]]


class ContainerRegistry:
    """
    容器注册表

    每个键最多对应一个容器，任意两个键不能引用同一个容器 ID。
    同一个键的并发创建由 ContainerManager 串行化，这里只负责记录和对账。
    """

    def __init__(self, docker_manager, on_vanished: Optional[VanishedHook] = None):
        """
        Args:
            docker_manager: 用于检查容器是否仍在运行的 DockerManager
            on_vanished: 发现容器已在外部被停止或删除时的回调，用于回收端口
        """
        self.docker_manager = docker_manager
        self.on_vanished = on_vanished
        self._entries: Dict[ContainerKey, ContainerInfo] = {}

    async def lookup(self, key: ContainerKey) -> Optional[ContainerInfo]:
        """
        查找存活的容器

        会向 Docker 确认容器仍在运行；如果容器已不存在或已停止，
        清除该条目并返回 None。
        """
        info = self._entries.get(key)
        if info is None:
            return None

        running = await asyncio.to_thread(self.docker_manager.is_running, info.container_id)
        if running:
            return info

        # 检查期间条目可能已被替换或删除
        if self._entries.get(key) is info:
            del self._entries[key]
            info.state = ContainerState.ABSENT
            logger.info(f"Container {info.short_id} for {key} is no longer running, purged")
            if self.on_vanished is not None:
                await self.on_vanished(info)
        return None

    def get(self, key: ContainerKey) -> Optional[ContainerInfo]:
        """不做存活检查的读取"""
        return self._entries.get(key)

    def put(self, key: ContainerKey, info: ContainerInfo) -> None:
        """
        注册容器

        Raises:
            ValueError: 容器 ID 已被其他键引用
        """
        for other_key, other in self._entries.items():
            if other_key != key and other.container_id == info.container_id:
                raise ValueError(
                    f"Container {info.short_id} already registered for {other_key}"
                )
        self._entries[key] = info
        logger.debug(f"Registered container {info.short_id} for {key}")

    def remove(self, key: ContainerKey) -> Optional[ContainerInfo]:
        return self._entries.pop(key, None)

    def keys(self) -> List[ContainerKey]:
        return list(self._entries.keys())

    def items(self) -> List[Tuple[ContainerKey, ContainerInfo]]:
        return list(self._entries.items())

    def container_ids(self) -> set:
        return {info.container_id for info in self._entries.values()}

    def __contains__(self, key: ContainerKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ContainerKey]:
        return iter(list(self._entries))
