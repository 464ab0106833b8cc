"""
ContainerManager 单元测试
"""

import asyncio

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from codeblocking.sandbox.models import ContainerKey, ContainerState, Environment, SandboxConfig
from codeblocking.sandbox.manager import ContainerManager
from codeblocking.sandbox.ports import PortAllocator
from codeblocking.sandbox.errors import ContainerCreateFailed, NoPortsAvailable


class TestEnsureContainer:
    """ensure_container 测试"""

    @pytest.mark.asyncio
    async def test_creates_container(self, container_manager, fake_docker, tmp_path):
        project_path = tmp_path / "u1" / "p1"

        info = await container_manager.ensure_container("u1", "p1", "node", str(project_path))

        container = fake_docker.containers[info.container_id]
        assert container["image"] == "codeblocking/node"
        assert container["running"] is True
        assert container["labels"] == {
            "codeblocking.userId": "u1",
            "codeblocking.projectId": "p1",
        }
        assert container["project_path"] == str(project_path)
        assert info.ports == {3000 + i: 3100 + i for i in range(11)}
        assert container["ports"] == info.ports
        assert info.environment == Environment.NODE
        assert info.state == ContainerState.RUNNING
        # 项目目录不存在时会被创建
        assert project_path.is_dir()

    @pytest.mark.asyncio
    async def test_relative_path_is_resolved(self, container_manager, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        info = await container_manager.ensure_container("u1", "p1", "base", "projects/p1")

        assert os.path.isabs(info.project_path)
        assert info.project_path == str(tmp_path / "projects" / "p1")

    @pytest.mark.asyncio
    async def test_unknown_environment_uses_base_image(self, container_manager, fake_docker, tmp_path):
        info = await container_manager.ensure_container("u1", "p1", "cobol", str(tmp_path))

        assert info.environment == Environment.BASE
        assert fake_docker.containers[info.container_id]["image"] == "codeblocking/base"

    @pytest.mark.asyncio
    async def test_reuses_running_container(self, container_manager, fake_docker, tmp_path):
        first = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        second = await container_manager.ensure_container("u1", "p1", "python", str(tmp_path))

        assert second.container_id == first.container_id
        assert fake_docker.create_calls == 1

    @pytest.mark.asyncio
    async def test_different_projects_get_different_ports(self, container_manager, tmp_path):
        first = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path / "p1"))
        second = await container_manager.ensure_container("u1", "p2", "node", str(tmp_path / "p2"))

        assert first.container_id != second.container_id
        assert set(first.ports.values()).isdisjoint(second.ports.values())
        assert list(second.ports.values()) == list(range(3111, 3122))

    @pytest.mark.asyncio
    async def test_single_flight(self, container_manager, fake_docker, tmp_path):
        """并发请求同一项目只创建一个容器"""
        results = await asyncio.gather(*[
            container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
            for _ in range(10)
        ])

        assert fake_docker.create_calls == 1
        assert len({info.container_id for info in results}) == 1
        assert len(container_manager.registry) == 1
        assert len(container_manager.port_allocator.leased) == 11

    @pytest.mark.asyncio
    async def test_single_flight_shares_failure(self, container_manager, fake_docker, tmp_path):
        fake_docker.fail_create = RuntimeError("image not found")

        results = await asyncio.gather(*[
            container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
            for _ in range(3)
        ], return_exceptions=True)

        assert fake_docker.create_calls == 1
        assert all(isinstance(r, ContainerCreateFailed) for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_creation(self, container_manager, fake_docker, tmp_path):
        """调用方取消后容器照常创建并登记，供后续请求复用"""
        task = asyncio.ensure_future(
            container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        )
        await asyncio.sleep(0)
        task.cancel()

        info = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        assert fake_docker.create_calls == 1
        assert container_manager.get_container_info("u1", "p1") is info

    @pytest.mark.asyncio
    async def test_create_failure_releases_ports(self, container_manager, fake_docker, tmp_path):
        """创建失败时端口全部归还，也不会登记容器"""
        fake_docker.fail_create = RuntimeError("bind mount failed")

        with pytest.raises(ContainerCreateFailed, match="bind mount failed"):
            await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        allocator = container_manager.port_allocator
        assert allocator.leased == frozenset()
        assert allocator.acquire_many(11) == list(range(3100, 3111))
        assert len(container_manager.registry) == 0

    @pytest.mark.asyncio
    async def test_start_failure_removes_container(self, container_manager, fake_docker, tmp_path):
        fake_docker.fail_start = RuntimeError("port is already allocated")

        with pytest.raises(ContainerCreateFailed):
            await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        assert fake_docker.containers == {}
        assert container_manager.port_allocator.leased == frozenset()

        fake_docker.fail_start = None
        info = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        assert list(info.ports.values()) == list(range(3100, 3111))

    @pytest.mark.asyncio
    async def test_no_ports_available(self, fake_docker, tmp_path):
        manager = ContainerManager(
            config=SandboxConfig(check_host_ports=False),
            docker_manager=fake_docker,
            port_allocator=PortAllocator(start=6000, size=15, check_host=False),
        )

        await manager.ensure_container("u1", "p1", "node", str(tmp_path / "p1"))

        with pytest.raises(NoPortsAvailable):
            await manager.ensure_container("u1", "p2", "node", str(tmp_path / "p2"))

        # 第二次尝试占用的 4 个端口已归还
        assert len(manager.port_allocator.leased) == 11
        assert fake_docker.create_calls == 1

    @pytest.mark.asyncio
    async def test_vanished_container_is_recreated(self, container_manager, fake_docker, tmp_path):
        """容器在外部被停止后，下次请求创建新容器，旧端口被回收"""
        first = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        fake_docker.kill(first.container_id)

        second = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        assert second.container_id != first.container_id
        assert first.container_id not in fake_docker.containers
        assert list(second.ports.values()) == list(range(3100, 3111))
        assert len(container_manager.port_allocator.leased) == 11
        assert len(container_manager.registry) == 1


class TestStopContainer:
    """stop_container 测试"""

    @pytest.mark.asyncio
    async def test_stop(self, container_manager, fake_docker, tmp_path):
        info = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        await container_manager.stop_container("u1", "p1")

        assert fake_docker.stop_calls == [(info.container_id, 5)]
        assert info.container_id not in fake_docker.containers
        assert container_manager.get_ports("u1", "p1") is None
        assert container_manager.port_allocator.leased == frozenset()
        assert info.state == ContainerState.ABSENT

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, container_manager, fake_docker, tmp_path):
        await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        await container_manager.stop_container("u1", "p1")
        await container_manager.stop_container("u1", "p1")

        assert len(fake_docker.stop_calls) == 1

    @pytest.mark.asyncio
    async def test_stop_unknown_is_noop(self, container_manager, fake_docker):
        await container_manager.stop_container("nobody", "nothing")
        assert fake_docker.stop_calls == []

    @pytest.mark.asyncio
    async def test_stop_failure_still_reclaims(self, container_manager, fake_docker, tmp_path):
        """Docker 报错不影响端口和注册表的回收"""
        await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        fake_docker.fail_stop = RuntimeError("daemon unavailable")
        fake_docker.fail_remove = RuntimeError("daemon unavailable")

        await container_manager.stop_container("u1", "p1")

        assert len(container_manager.registry) == 0
        assert container_manager.port_allocator.leased == frozenset()


class TestCleanup:
    """cleanup_all 与查询接口测试"""

    @pytest.mark.asyncio
    async def test_cleanup_all(self, container_manager, fake_docker, tmp_path):
        await container_manager.ensure_container("u1", "p1", "node", str(tmp_path / "p1"))
        await container_manager.ensure_container("u2", "p2", "python", str(tmp_path / "p2"))
        orphan = fake_docker.add_orphan({"codeblocking.userId": "old", "codeblocking.projectId": "old"})
        unrelated = fake_docker.add_orphan({"other.label": "x"})

        removed = await container_manager.cleanup_all()

        assert removed == 1
        assert orphan not in fake_docker.containers
        assert unrelated in fake_docker.containers
        assert (orphan, 1) in fake_docker.stop_calls
        assert len(container_manager.registry) == 0
        assert container_manager.port_allocator.leased == frozenset()

    @pytest.mark.asyncio
    async def test_cleanup_waits_for_in_flight_creation(self, container_manager, fake_docker, tmp_path):
        """清理开始时仍在创建的容器也会被停止，端口全部归还"""
        fake_docker.create_delay = 0.2
        creation = asyncio.ensure_future(
            container_manager.ensure_container("u1", "p1", "node", str(tmp_path / "p1"))
        )
        await asyncio.sleep(0.05)

        removed = await container_manager.cleanup_all()
        info = await creation

        assert removed == 0
        assert info.state == ContainerState.ABSENT
        assert len(container_manager.registry) == 0
        assert container_manager.port_allocator.leased == frozenset()
        assert fake_docker.containers == {}

    @pytest.mark.asyncio
    async def test_cleanup_tolerates_orphan_failures(self, container_manager, fake_docker):
        labels = {"codeblocking.userId": "old"}
        broken = fake_docker.add_orphan(labels)
        fine = fake_docker.add_orphan(labels)
        fake_docker.fail_remove_ids.add(broken)

        removed = await container_manager.cleanup_all()

        assert removed == 1
        assert fine not in fake_docker.containers
        assert broken in fake_docker.containers

    @pytest.mark.asyncio
    async def test_initialize_sweeps_orphans(self, container_manager, fake_docker):
        orphan = fake_docker.add_orphan({"codeblocking.userId": "old"})

        await container_manager.initialize()

        assert orphan not in fake_docker.containers

    @pytest.mark.asyncio
    async def test_get_ports(self, container_manager, tmp_path):
        assert container_manager.get_ports("u1", "p1") is None

        info = await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))
        ports = container_manager.get_ports("u1", "p1")

        assert ports == info.ports
        # 返回副本，修改不影响登记信息
        ports[3000] = 1
        assert info.ports[3000] == 3100

    @pytest.mark.asyncio
    async def test_list_containers(self, container_manager, tmp_path):
        await container_manager.ensure_container("u1", "p1", "node", str(tmp_path))

        containers = container_manager.list_containers()

        assert len(containers) == 1
        assert containers[0]["user_id"] == "u1"
        assert containers[0]["project_id"] == "p1"
        assert containers[0]["environment"] == "node"
