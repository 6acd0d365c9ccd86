"""配置管理模块 - 支持环境变量和 YAML/JSON 配置文件"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RuntimeConfig:
    """运行时配置"""
    # 环境名称；只有 dev 环境会启动 Reflection 服务
    env: str = "prod"
    log_level: str = "INFO"
    default_model: Optional[str] = None
    # 生成循环默认允许的工具往返次数
    max_turns: int = 5
    # 进程退出时等待服务和 Plugin 关闭的时间（秒）
    shutdown_timeout: float = 5.0

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"


@dataclass
class ReflectionConfig:
    """Reflection 服务配置"""
    host: str = "127.0.0.1"
    port: int = 3100


@dataclass
class FlowServerConfig:
    """Flow 服务配置"""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 3400
    path_prefix: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_body_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """
    主配置类 - 管理所有配置项

    配置优先级（从高到低）:
    1. 代码中直接传入的参数（Genkit 构造参数）
    2. 环境变量
    3. 配置文件
    4. 默认值

    环境变量命名规则:
    - 运行时: GENKIT_ENV, GENKIT_LOG_LEVEL, GENKIT_DEFAULT_MODEL, GENKIT_MAX_TURNS
    - Reflection: GENKIT_REFLECTION_HOST, GENKIT_REFLECTION_PORT
    - Flow 服务: GENKIT_FLOW_SERVER_ENABLED, PORT（或 GENKIT_FLOW_SERVER_PORT）
    """
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    reflection: ReflectionConfig = field(default_factory=ReflectionConfig)
    flow_server: FlowServerConfig = field(default_factory=FlowServerConfig)

    # 环境变量前缀
    ENV_PREFIX: str = "GENKIT_"

    @classmethod
    def load(
        cls,
        config_file: str | Path | None = None,
        env_prefix: str = "GENKIT_",
    ) -> "Config":
        """
        加载配置

        Args:
            config_file: 可选的配置文件路径 (支持 .yaml, .yml, .json)
            env_prefix: 环境变量前缀

        Returns:
            Config 实例
        """
        config = cls()
        config.ENV_PREFIX = env_prefix

        # 1. 从配置文件加载
        if config_file:
            config._load_from_file(config_file)
        else:
            config._auto_discover_config()

        # 2. 从环境变量加载（会覆盖配置文件的值）
        config._load_from_env()

        return config

    def _auto_discover_config(self) -> None:
        """自动发现配置文件"""
        search_paths = [
            Path.cwd() / "genkit.yaml",
            Path.cwd() / "genkit.yml",
            Path.cwd() / ".genkit.yaml",
            Path.home() / ".genkit.yaml",
            Path.cwd() / "genkit.json",
        ]

        for path in search_paths:
            if path.exists():
                self._load_from_file(path)
                break

    def _load_from_file(self, config_file: str | Path) -> None:
        """从配置文件加载（支持 YAML 和 JSON）"""
        path = Path(config_file)

        if not path.exists():
            return

        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        if data:
            self._apply_dict(data)

    def _load_from_env(self) -> None:
        """从环境变量加载配置"""
        prefix = self.ENV_PREFIX

        # 运行时配置
        if env := os.getenv(f"{prefix}ENV"):
            self.runtime.env = env

        if log_level := os.getenv(f"{prefix}LOG_LEVEL"):
            self.runtime.log_level = log_level.upper()

        if default_model := os.getenv(f"{prefix}DEFAULT_MODEL"):
            self.runtime.default_model = default_model

        if max_turns := os.getenv(f"{prefix}MAX_TURNS"):
            self.runtime.max_turns = int(max_turns)

        if shutdown_timeout := os.getenv(f"{prefix}SHUTDOWN_TIMEOUT"):
            self.runtime.shutdown_timeout = float(shutdown_timeout)

        # Reflection 配置
        if host := os.getenv(f"{prefix}REFLECTION_HOST"):
            self.reflection.host = host

        if port := os.getenv(f"{prefix}REFLECTION_PORT"):
            self.reflection.port = int(port)

        # Flow 服务配置
        if enabled := os.getenv(f"{prefix}FLOW_SERVER_ENABLED"):
            self.flow_server.enabled = enabled.lower() in ('true', '1', 'yes')

        if port := os.getenv(f"{prefix}FLOW_SERVER_PORT") or os.getenv("PORT"):
            self.flow_server.port = int(port)

        if path_prefix := os.getenv(f"{prefix}FLOW_SERVER_PATH_PREFIX"):
            self.flow_server.path_prefix = path_prefix

    def _apply_dict(self, data: dict[str, Any]) -> None:
        """从字典应用配置（未知的键被忽略）"""
        if runtime_data := data.get("runtime"):
            _update(self.runtime, runtime_data)

        if reflection_data := data.get("reflection"):
            _update(self.reflection, reflection_data)

        if flow_server_data := data.get("flow_server"):
            _update(self.flow_server, flow_server_data)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "runtime": asdict(self.runtime),
            "reflection": asdict(self.reflection),
            "flow_server": asdict(self.flow_server),
        }

    def save(self, config_file: str | Path) -> None:
        """保存配置到文件（根据扩展名自动选择格式）"""
        path = Path(config_file)

        with open(path, 'w', encoding='utf-8') as f:
            if path.suffix.lower() in ('.yaml', '.yml'):
                yaml.dump(
                    self.to_dict(),
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    sort_keys=False,
                )
            else:
                json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)


def _update(section: Any, data: dict[str, Any]) -> None:
    names = {f.name for f in fields(section)}
    for key, value in data.items():
        if key in names:
            setattr(section, key, value)


# 全局默认配置实例（懒加载）
_default_config: Config | None = None


def get_config() -> Config:
    """获取全局默认配置"""
    global _default_config
    if _default_config is None:
        _default_config = Config.load()
    return _default_config


def set_config(config: Optional[Config]) -> None:
    """设置全局默认配置（传 None 时下次 get_config 重新加载）"""
    global _default_config
    _default_config = config
