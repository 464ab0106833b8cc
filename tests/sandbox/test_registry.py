"""
ContainerRegistry 单元测试
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from codeblocking.sandbox.models import ContainerInfo, ContainerKey, ContainerState, Environment
from codeblocking.sandbox.registry import ContainerRegistry


def make_info(fake_docker, user_id="u1", project_id="p1", running=True):
    container_id = fake_docker.create_container(
        image="codeblocking/base",
        name="test",
        project_path="/tmp",
        ports={3000: 3100},
        labels={"codeblocking.userId": user_id},
    )
    if running:
        fake_docker.start_container(container_id)
    return ContainerInfo(
        container_id=container_id,
        environment=Environment.BASE,
        ports={3000: 3100},
        project_path="/tmp",
        user_id=user_id,
        project_id=project_id,
    )


class TestContainerRegistry:
    """ContainerRegistry 测试"""

    @pytest.mark.asyncio
    async def test_lookup_missing(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        assert await registry.lookup(ContainerKey("u1", "p1")) is None

    @pytest.mark.asyncio
    async def test_lookup_running(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        info = make_info(fake_docker)
        registry.put(info.key, info)

        assert await registry.lookup(info.key) is info
        assert info.key in registry

    @pytest.mark.asyncio
    async def test_lookup_purges_stopped_container(self, fake_docker):
        """容器在外部被停止后，lookup 清除条目并调用回调"""
        vanished = []

        async def on_vanished(info):
            vanished.append(info)

        registry = ContainerRegistry(fake_docker, on_vanished=on_vanished)
        info = make_info(fake_docker)
        registry.put(info.key, info)

        fake_docker.kill(info.container_id)

        assert await registry.lookup(info.key) is None
        assert info.key not in registry
        assert len(registry) == 0
        assert vanished == [info]
        assert info.state == ContainerState.ABSENT

    @pytest.mark.asyncio
    async def test_lookup_purges_removed_container(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        info = make_info(fake_docker)
        registry.put(info.key, info)

        fake_docker.containers.pop(info.container_id)

        assert await registry.lookup(info.key) is None
        assert registry.get(info.key) is None

    def test_put_rejects_shared_container_id(self, fake_docker):
        """两个键不能引用同一个容器"""
        registry = ContainerRegistry(fake_docker)
        info = make_info(fake_docker)
        registry.put(info.key, info)

        other = ContainerInfo(
            container_id=info.container_id,
            environment=Environment.BASE,
            ports={},
            project_path="/tmp",
            user_id="u2",
            project_id="p2",
        )

        with pytest.raises(ValueError, match="already registered"):
            registry.put(other.key, other)

    def test_put_same_key_replaces(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        info = make_info(fake_docker)
        registry.put(info.key, info)
        registry.put(info.key, info)

        assert len(registry) == 1

    def test_remove(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        info = make_info(fake_docker)
        registry.put(info.key, info)

        assert registry.remove(info.key) is info
        assert registry.remove(info.key) is None
        assert registry.keys() == []

    def test_container_ids(self, fake_docker):
        registry = ContainerRegistry(fake_docker)
        first = make_info(fake_docker, "u1", "p1")
        second = make_info(fake_docker, "u1", "p2")
        registry.put(first.key, first)
        registry.put(second.key, second)

        assert registry.container_ids() == {first.container_id, second.container_id}
        assert set(registry) == {first.key, second.key}
