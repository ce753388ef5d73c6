"""
MemoryBook - 角色 / 会话长期记忆引擎

持久化记忆本 + 混合检索 (向量 + 关键词) + 自动提取。
"""

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path


def _resolve_version() -> str:
    # editable 安装时以源码树里的 pyproject.toml 为准
    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if pyproject.is_file():
        import tomllib

        try:
            with pyproject.open("rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, tomllib.TOMLDecodeError):
            pass

    try:
        return version("memorybook")
    except PackageNotFoundError:
        return "0.0.0-dev"


__version__ = _resolve_version()
