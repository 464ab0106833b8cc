"""
宿主机端口分配

维护一个固定区间的端口池，为容器端口映射分配空闲的宿主机端口。
"""

import socket
import logging
from typing import List, Set, FrozenSet

from .errors import NoPortsAvailable

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """
    检查端口在操作系统层面是否可绑定

    检查与租用之间存在竞态，结果只作参考。
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """
    端口分配器

    从 [start, start + size) 中按从小到大的顺序分配端口。
    所有操作都是同步的，在事件循环中调用时不会被打断。
    """

    def __init__(self, start: int = 3100, size: int = 1000, check_host: bool = True):
        """
        Args:
            start: 端口区间起点
            size: 端口区间大小
            check_host: 租用前是否检查端口在宿主机上未被其他进程占用
        """
        if size < 1:
            raise ValueError("Port range size must be at least 1")
        self.start = start
        self.end = start + size
        self.check_host = check_host
        self._leased: Set[int] = set()

    @property
    def leased(self) -> FrozenSet[int]:
        return frozenset(self._leased)

    @property
    def available_count(self) -> int:
        return (self.end - self.start) - len(self._leased)

    def is_leased(self, port: int) -> bool:
        return port in self._leased

    def acquire(self) -> int:
        """
        租用一个空闲端口

        Returns:
            端口号

        Raises:
            NoPortsAvailable: 区间内没有空闲端口
        """
        for port in range(self.start, self.end):
            if port in self._leased:
                continue
            if self.check_host and not is_port_free(port):
                logger.debug(f"Port {port} is held by another process, skipping")
                continue
            self._leased.add(port)
            return port
        raise NoPortsAvailable(self.start, self.end)

    def acquire_many(self, count: int) -> List[int]:
        """
        一次租用多个端口

        任何一个端口分配失败时，已租用的端口会全部归还后再抛出异常。
        """
        ports: List[int] = []
        try:
            for _ in range(count):
                ports.append(self.acquire())
        except NoPortsAvailable:
            self.release_many(ports)
            raise
        return ports

    def release(self, port: int) -> None:
        """归还端口，重复归还无副作用"""
        self._leased.discard(port)

    def release_many(self, ports) -> None:
        for port in ports:
            self.release(port)
