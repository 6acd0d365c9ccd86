"""
Pytest Configuration and Fixtures
"""

import pytest

from tiny_genkit import Config, Registry, set_config
from tiny_genkit.models import ModelInfo, ModelSupports


@pytest.fixture(autouse=True)
def default_config():
    """每个测试使用全新的默认配置，不读取环境变量和配置文件"""
    config = Config()
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def registry() -> Registry:
    """Returns a fresh Registry."""
    return Registry()


@pytest.fixture
def tool_model_info() -> ModelInfo:
    """支持工具调用的模型信息"""
    return ModelInfo(label="stub", supports=ModelSupports(tools=True))
