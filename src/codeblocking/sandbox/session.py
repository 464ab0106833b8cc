"""
终端 Session 管理模块

为每个连接的客户端 socket 在项目容器内创建交互式 shell，
转发输入输出，并在断开连接时清理。
"""

import codecs
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .models import TerminalSession, TerminalState
from .errors import ExecFailed
from .manager import ContainerManager

logger = logging.getLogger(__name__)


READ_CHUNK_SIZE = 4096


class TerminalSessionManager:
    """
    终端 Session 管理器

    以 socket ID 为键管理 TerminalSession。每个 Session 的状态依次为
    attaching -> open -> closing -> closed；流结束、流错误、socket 断开、
    容器退出、进程关闭这几种情况最终都经由 _close_session 收敛到 closed，
    且只清理一次。

    channel 参数需要提供 sid 属性和 async emit(event, data) 方法。
    """

    def __init__(self, container_manager: ContainerManager, workspace=None):
        """
        Args:
            container_manager: 容器管理器
            workspace: 项目目录管理（WorkspaceManager），用于解析项目路径
        """
        if workspace is None:
            from codeblocking.workspace import WorkspaceManager
            workspace = WorkspaceManager.load_from_config()

        self.container_manager = container_manager
        self.docker_manager = container_manager.docker_manager
        self.config = container_manager.config
        self.workspace = workspace

        self._sessions: Dict[str, TerminalSession] = {}
        # socket 级别的锁，保证同一 socket 的事件按到达顺序处理
        self._socket_locks: Dict[str, asyncio.Lock] = {}

    def _get_socket_lock(self, sid: str) -> asyncio.Lock:
        if sid not in self._socket_locks:
            self._socket_locks[sid] = asyncio.Lock()
        return self._socket_locks[sid]

    async def on_create(
        self,
        channel,
        project_id: Optional[str],
        user_id: str,
        environment: Optional[str] = None,
    ) -> Optional[TerminalSession]:
        """
        为 socket 创建终端

        成功时发送 terminal:ready（包含端口映射），失败时发送 terminal:error。

        Returns:
            创建的 TerminalSession，失败时为 None
        """
        async with self._get_socket_lock(channel.sid):
            return await self._create(channel, project_id, user_id, environment)

    async def _create(
        self,
        channel,
        project_id: Optional[str],
        user_id: str,
        environment: Optional[str],
    ) -> Optional[TerminalSession]:
        if not project_id:
            await self._emit(channel, "terminal:error", {"message": "Project ID required"})
            return None

        # 同一个 socket 再次请求终端时替换旧的 Session
        previous = self._sessions.get(channel.sid)
        if previous is not None:
            logger.info(f"Replacing terminal session for socket {channel.sid}")
            self._close_session(previous)

        try:
            project_path = self.workspace.resolve_project_path(user_id, project_id)
            if not environment:
                environment = await asyncio.to_thread(self.workspace.detect_environment, project_path)

            info = await self.container_manager.ensure_container(
                user_id, project_id, environment, project_path
            )
            session = await self._attach(channel.sid, info)
        except Exception as e:
            logger.error(f"Error creating terminal for {user_id}/{project_id}: {e}")
            await self._emit(
                channel,
                "terminal:error",
                {"message": str(e) or "Failed to create terminal"},
            )
            return None

        await self._emit(
            channel,
            "terminal:ready",
            {"ports": info.ports_payload(), "containerId": info.container_id},
        )
        session.reader_task = asyncio.create_task(self._pump_output(channel, session))

        logger.info(
            f"Terminal created for {user_id}/{project_id} "
            f"(socket {channel.sid}, container {info.short_id})"
        )
        return session

    async def _attach(self, sid: str, info) -> TerminalSession:
        """创建 exec 并连接流，两者要么都成功要么都不保留"""
        session = TerminalSession(
            sid=sid,
            user_id=info.user_id,
            project_id=info.project_id,
            container_id=info.container_id,
        )

        try:
            exec_id = await asyncio.to_thread(
                self.docker_manager.create_exec,
                info.container_id,
                [self.config.shell],
                self.config.workdir,
                {"TERM": "xterm-256color"},
            )
            stream = await asyncio.to_thread(self.docker_manager.start_exec, exec_id)
        except Exception as e:
            raise ExecFailed(f"Failed to start terminal: {e}") from e

        session.exec_id = exec_id
        session.stream = stream
        session.state = TerminalState.OPEN
        self._sessions[sid] = session
        return session

    async def _pump_output(self, channel, session: TerminalSession) -> None:
        """把容器输出转发给客户端，直到流结束或出错"""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                chunk = await session.stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self._emit(channel, "terminal:output", {"data": text})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # 主动关闭引起的读错误不再上报
            if session.is_open():
                logger.error(f"Terminal stream error (socket {session.sid}): {e}")
                self._close_session(session)
                await self._emit(
                    channel,
                    "terminal:error",
                    {"message": str(e) or "Stream error occurred"},
                )
            return

        if not session.is_open():
            return

        tail = decoder.decode(b"", final=True)
        if tail:
            await self._emit(channel, "terminal:output", {"data": tail})

        exit_code = await self._exit_code(session)
        if not session.is_open():
            return
        self._close_session(session)
        await self._emit(channel, "terminal:exit", {"exitCode": exit_code})
        logger.info(f"Terminal exited (socket {session.sid}, code {exit_code})")

    async def _exit_code(self, session: TerminalSession) -> int:
        try:
            exit_code = await asyncio.to_thread(self.docker_manager.exec_exit_code, session.exec_id)
        except Exception as e:
            logger.debug(f"Could not inspect exec {session.exec_id}: {e}")
            return 0
        return exit_code if exit_code is not None else 0

    async def on_input(self, channel, data: Any) -> None:
        """
        写入终端输入

        socket 没有 Session 或数据不是 str/bytes 时直接丢弃。
        """
        if not isinstance(data, (str, bytes)):
            logger.debug(f"Ignoring non-text terminal input (socket {channel.sid})")
            return
        async with self._get_socket_lock(channel.sid):
            session = self._sessions.get(channel.sid)
            if session is None or not session.is_open():
                return
            try:
                await session.stream.write(data)
            except Exception as e:
                logger.error(f"Error writing to terminal (socket {channel.sid}): {e}")
                self._close_session(session)
                await self._emit(channel, "terminal:error", {"message": str(e) or "Write failed"})

    async def on_resize(self, channel, cols: int, rows: int) -> None:
        """调整伪终端大小，失败只记录日志"""
        async with self._get_socket_lock(channel.sid):
            session = self._sessions.get(channel.sid)
            if session is None or not session.is_open():
                return
            try:
                await asyncio.to_thread(
                    self.docker_manager.resize_exec, session.exec_id, int(cols), int(rows)
                )
            except Exception as e:
                logger.error(f"Error resizing terminal (socket {channel.sid}): {e}")

    async def on_disconnect(self, channel) -> None:
        """
        socket 断开：关闭 Session

        不会停止容器，后续同一项目的终端会复用它。
        """
        async with self._get_socket_lock(channel.sid):
            session = self._sessions.get(channel.sid)
            if session is not None:
                self._close_session(session)
                logger.info(f"Terminal disconnected: {channel.sid}")
        self._socket_locks.pop(channel.sid, None)

    def _close_session(self, session: TerminalSession) -> None:
        """
        关闭 Session 并从表中移除

        可以重复调用，只有第一次生效。过程中没有 await，不会被其他任务打断。
        """
        if session.state in (TerminalState.CLOSING, TerminalState.CLOSED):
            return
        session.state = TerminalState.CLOSING

        if self._sessions.get(session.sid) is session:
            del self._sessions[session.sid]

        if session.stream is not None:
            try:
                session.stream.close()
            except Exception as e:
                logger.warning(f"Error closing terminal stream (socket {session.sid}): {e}")

        task = session.reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        session.state = TerminalState.CLOSED

    async def _emit(self, channel, event: str, data: dict) -> None:
        try:
            await channel.emit(event, data)
        except Exception as e:
            logger.warning(f"Failed to emit {event} to socket {channel.sid}: {e}")

    def get_session(self, sid: str) -> Optional[TerminalSession]:
        return self._sessions.get(sid)

    def list_sessions(self) -> List[dict]:
        return [s.to_dict() for s in self._sessions.values()]

    def get_active_session_count(self) -> int:
        """获取活跃 Session 数量"""
        return len(self._sessions)

    async def cleanup_all(self) -> None:
        """
        关闭所有 Session

        进程退出时在清理容器之前调用。
        """
        sessions = list(self._sessions.values())
        tasks = [s.reader_task for s in sessions if s.reader_task is not None]

        for session in sessions:
            self._close_session(session)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._sessions.clear()
        self._socket_locks.clear()

        if sessions:
            logger.info(f"Closed {len(sessions)} terminal sessions")
