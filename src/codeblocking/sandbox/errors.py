"""
沙盒异常定义
"""


class SandboxError(RuntimeError):
    """沙盒模块异常基类"""


class NoPortsAvailable(SandboxError):
    """端口池已耗尽"""

    def __init__(self, start: int, end: int):
        super().__init__(f"No available ports in range {start}-{end - 1}")
        self.start = start
        self.end = end


class ContainerCreateFailed(SandboxError):
    """容器创建或启动失败，已回滚端口"""


class ExecFailed(SandboxError):
    """无法在容器内创建或启动交互式 exec"""
