"""
项目运行环境探测

根据项目根目录下的文件判断应该使用哪个沙盒镜像。
"""

import os
import logging

from codeblocking.sandbox.models import Environment

logger = logging.getLogger(__name__)


PYTHON_MARKERS = {"requirements.txt", "setup.py", "pyproject.toml", "Pipfile"}
NODE_MARKERS = {"package.json"}
JAVA_MARKERS = {"pom.xml", "build.gradle", "build.gradle.kts"}

PYTHON_SUFFIXES = (".py",)
NODE_SUFFIXES = (".js", ".ts", ".jsx", ".tsx")
JAVA_SUFFIXES = (".java",)


def detect_environment(project_path: str) -> Environment:
    """
    探测项目环境

    只检查项目根目录。只匹配到一种语言时返回对应环境；
    没有匹配、匹配到多种语言或目录不存在时返回 BASE。
    """
    try:
        files = os.listdir(project_path)
    except OSError:
        return Environment.BASE

    detected = []
    if any(f in PYTHON_MARKERS or f.endswith(PYTHON_SUFFIXES) for f in files):
        detected.append(Environment.PYTHON)
    if any(f in NODE_MARKERS or f.endswith(NODE_SUFFIXES) for f in files):
        detected.append(Environment.NODE)
    if any(f in JAVA_MARKERS or f.endswith(JAVA_SUFFIXES) for f in files):
        detected.append(Environment.JAVA)

    if len(detected) == 1:
        environment = detected[0]
    else:
        environment = Environment.BASE

    logger.debug(f"Detected environment {environment.value} for {project_path}")
    return environment
