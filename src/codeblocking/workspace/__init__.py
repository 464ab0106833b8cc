"""
项目工作区模块
"""

from .environment import detect_environment
from .git import WorkspaceManager, GitError, authenticated_url

__all__ = ["detect_environment", "WorkspaceManager", "GitError", "authenticated_url"]
