"""
CodeBlocking 后端

浏览器 IDE 的容器与终端服务。
"""

__version__ = "0.1.0"
