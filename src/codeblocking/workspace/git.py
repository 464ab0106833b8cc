"""
项目工作区与 Git 操作

项目目录位于 <root>/<user_id>/<project_id>，以读写方式挂载进沙盒容器。
Git 操作通过 git 命令行异步执行。
"""

import os
import shutil
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .environment import detect_environment

logger = logging.getLogger(__name__)


DEFAULT_WORKSPACE_ROOT = os.path.join(os.path.expanduser("~"), ".codeblocking", "workspaces")
DEFAULT_COMMIT_MESSAGE = "Update from CodeBlocking IDE"


class GitError(RuntimeError):
    """git 命令执行失败"""


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """把访问令牌写入 GitHub 仓库地址，用于克隆私有仓库"""
    if not token:
        return repo_url
    return repo_url.replace("https://github.com/", f"https://{token}@github.com/", 1)


def _safe_segment(value: str) -> str:
    """路径片段不能跳出工作区根目录"""
    segment = str(value).strip()
    if not segment or segment in (".", "..") or "/" in segment or "\\" in segment:
        raise ValueError(f"Invalid path segment: {value!r}")
    return segment


class WorkspaceManager:
    """
    工作区管理器

    负责项目目录的定位、克隆、同步和删除。
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or DEFAULT_WORKSPACE_ROOT).expanduser().resolve()

    @classmethod
    def load_from_config(cls) -> "WorkspaceManager":
        """从项目配置文件加载"""
        from codeblocking.config import get_config
        config = get_config()
        return cls(root=config.get("workspace", {}).get("root"))

    def resolve_project_path(self, user_id: str, project_id: str) -> str:
        """获取项目的宿主机绝对路径"""
        path = self.root / _safe_segment(user_id) / _safe_segment(project_id)
        return str(path)

    def detect_environment(self, project_path: str):
        return detect_environment(project_path)

    async def _run_git(self, args: List[str], cwd: Optional[str] = None, secret: Optional[str] = None) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            if secret:
                message = message.replace(secret, "***")
            raise GitError(f"git {args[0]} failed ({process.returncode}): {message}")

        return stdout.decode("utf-8", errors="replace")

    async def clone_into(self, path: str, repo_url: str, token: Optional[str] = None) -> str:
        """
        克隆仓库到指定目录

        Args:
            path: 目标目录（不能已存在且非空）
            repo_url: 仓库 HTTPS 地址
            token: GitHub 访问令牌，私有仓库需要

        Returns:
            目标目录
        """
        os.makedirs(os.path.dirname(path), exist_ok=True)
        logger.info(f"Cloning {repo_url} into {path}")
        await self._run_git(["clone", authenticated_url(repo_url, token), path], secret=token)
        return path

    async def clone_repository(self, repo_url: str, token: Optional[str], user_id: str, project_id: str) -> str:
        path = self.resolve_project_path(user_id, project_id)
        return await self.clone_into(path, repo_url, token)

    async def pull(self, path: str) -> None:
        await self._run_git(["pull"], cwd=path)

    async def push(self, path: str, message: str = DEFAULT_COMMIT_MESSAGE) -> None:
        """提交所有改动并推送"""
        await self._run_git(["add", "."], cwd=path)
        await self._run_git(["commit", "-m", message], cwd=path)
        await self._run_git(["push"], cwd=path)

    def delete_tree(self, path: str) -> bool:
        """
        删除项目目录

        Returns:
            目录是否存在
        """
        target = Path(path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Refusing to delete {target} outside workspace root")
        if not target.exists():
            return False
        shutil.rmtree(target)
        logger.info(f"Deleted project directory {target}")
        return True

    def delete_project(self, user_id: str, project_id: str) -> bool:
        return self.delete_tree(self.resolve_project_path(user_id, project_id))
