"""Registry - Action 表和 Plugin 缓存"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from .action import Action, ActionKind, action_key, parse_action_key
from .errors import DuplicateNameError, PluginInitializationError, PluginNotFoundError
from .plugin import Plugin, PluginProvider

if TYPE_CHECKING:
    from .stores import FlowStateStore, TraceStore

logger = logging.getLogger(__name__)


class Registry:
    """
    Registry - 一组 Action 和 Plugin 的命名空间

    核心设计理念:
    - 同一个 Registry 中 (kind, name) 唯一，重复注册抛 DuplicateNameError
    - Plugin 惰性初始化：注册时不执行，第一次解析时执行，结果（包括失败）被缓存
    - 并发的首次解析共享同一个初始化任务（claim-or-join）
    - 子 Registry 查找不到时委托给父 Registry，共享父的 Plugin 缓存；
      在子 Registry 上注册的内容只存在于子 Registry

    一个进程中可以存在多个互相隔离的 Registry。
    """

    def __init__(self, parent: Optional['Registry'] = None):
        self.parent = parent
        self._actions: dict[str, Action] = {}
        self._providers: dict[str, PluginProvider] = {}
        self._plugin_futures: dict[str, asyncio.Future[Plugin]] = {}
        self._plugin_actions: dict[str, list[str]] = {}

        self._trace_store: Optional['TraceStore'] = None
        self._flow_state_store: Optional['FlowStateStore'] = None

        # 由 ReflectionServer 占用（每个 Registry 最多一个）
        self.reflection_server: Optional[Any] = None

    def child(self) -> 'Registry':
        """创建子 Registry"""
        return Registry(parent=self)

    # ==================== 存储 ====================

    @property
    def trace_store(self) -> Optional['TraceStore']:
        if self._trace_store is None and self.parent is not None:
            return self.parent.trace_store
        return self._trace_store

    @trace_store.setter
    def trace_store(self, store: Optional['TraceStore']) -> None:
        self._trace_store = store

    @property
    def flow_state_store(self) -> Optional['FlowStateStore']:
        if self._flow_state_store is None and self.parent is not None:
            return self.parent.flow_state_store
        return self._flow_state_store

    @flow_state_store.setter
    def flow_state_store(self, store: Optional['FlowStateStore']) -> None:
        self._flow_state_store = store

    # ==================== Action ====================

    def register_action(self, action: Action) -> Action:
        """
        注册 Action

        Raises:
            DuplicateNameError: (kind, name) 已在本 Registry 中注册
        """
        key = action.key
        if key in self._actions:
            raise DuplicateNameError(f"Action '{key}' is already registered", details={'key': key})
        self._actions[key] = action
        if action.registry is None:
            action.registry = self
        logger.debug(f"[Registry] registered action {key}")
        return action

    def lookup_action(self, kind: ActionKind | str, name: str) -> Optional[Action]:
        """查找 Action（不会触发 Plugin 初始化）"""
        action = self._actions.get(action_key(kind, name))
        if action is None and self.parent is not None:
            return self.parent.lookup_action(kind, name)
        return action

    def lookup_by_key(self, key: str) -> Optional[Action]:
        kind, name = parse_action_key(key)
        return self.lookup_action(kind, name)

    async def resolve_action(self, kind: ActionKind | str, name: str) -> Optional[Action]:
        """
        查找 Action；name 形如 "plugin/xxx" 且尚未注册时先初始化对应 Plugin

        Raises:
            PluginInitializationError: 对应 Plugin 初始化失败
        """
        action = self.lookup_action(kind, name)
        if action is not None or '/' not in name:
            return action
        plugin_name = name.split('/', 1)[0]
        if not self.has_plugin(plugin_name):
            return None
        await self.resolve_plugin(plugin_name)
        return self.lookup_action(kind, name)

    async def resolve_by_key(self, key: str) -> Optional[Action]:
        kind, name = parse_action_key(key)
        return await self.resolve_action(kind, name)

    def list_actions(self) -> dict[str, Action]:
        """所有可见的 Action（子 Registry 的同名项覆盖父 Registry）"""
        actions = self.parent.list_actions() if self.parent is not None else {}
        actions.update(self._actions)
        return actions

    # ==================== Plugin ====================

    def register_plugin(self, provider: PluginProvider, replace: bool = False) -> None:
        """
        注册 PluginProvider（不会执行初始化）

        Args:
            provider: 提供者
            replace: 替换同名提供者，并丢弃已缓存的初始化结果

        Raises:
            DuplicateNameError: 同名提供者已注册且 replace=False
        """
        name = provider.name
        if name in self._providers:
            if not replace:
                raise DuplicateNameError(f"Plugin '{name}' is already registered", details={'plugin': name})
            self._evict_plugin(name)
            logger.info(f"[Registry] replaced plugin {name}")
        self._providers[name] = provider

    def has_plugin(self, name: str) -> bool:
        if name in self._providers:
            return True
        return self.parent is not None and self.parent.has_plugin(name)

    def plugin_names(self) -> list[str]:
        names = self.parent.plugin_names() if self.parent is not None else []
        names.extend(n for n in self._providers if n not in names)
        return names

    async def resolve_plugin(self, name: str) -> Plugin:
        """
        解析 Plugin（每个 Registry 最多初始化一次）

        Raises:
            PluginNotFoundError: 未注册
            PluginInitializationError: 初始化失败（之后每次解析都抛同一个错误）
        """
        provider = self._providers.get(name)
        if provider is None:
            if self.parent is not None:
                return await self.parent.resolve_plugin(name)
            raise PluginNotFoundError(f"Plugin '{name}' is not registered", details={'plugin': name})

        future = self._plugin_futures.get(name)
        if future is None:
            future = asyncio.ensure_future(self._initialize_plugin(provider))
            self._plugin_futures[name] = future
        # 某个等待方被取消不会中断共享的初始化任务
        return await asyncio.shield(future)

    async def initialize_all_plugins(self) -> dict[str, BaseException]:
        """
        初始化所有可见的 Plugin

        Returns:
            初始化失败的 Plugin 名称 -> 错误
        """
        names = self.plugin_names()
        results = await asyncio.gather(
            *(self.resolve_plugin(name) for name in names),
            return_exceptions=True,
        )
        failures = {}
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[name] = result
        return failures

    async def shutdown_plugins(self) -> None:
        """执行本 Registry 中已初始化 Plugin 的 shutdown 钩子"""
        for name, future in list(self._plugin_futures.items()):
            if not future.done() or future.cancelled() or future.exception() is not None:
                continue
            hook = future.result().shutdown
            if hook is None:
                continue
            logger.info(f"[Registry] shutting down plugin {name}")
            try:
                await hook()
            except Exception:
                logger.exception(f"[Registry] plugin {name} shutdown failed")

    # ==================== 内部方法 ====================

    async def _initialize_plugin(self, provider: PluginProvider) -> Plugin:
        name = provider.name
        logger.info(f"[Registry] initializing plugin {name}")
        keys: list[str] = []
        try:
            plugin = await provider.initializer()
            if not isinstance(plugin, Plugin):
                raise TypeError(f"initializer returned {type(plugin).__name__}, expected Plugin")
            if self._providers.get(name) is not provider:
                # 初始化期间被 replace，结果只交给已经在等待的调用方
                return plugin
            for action in plugin.actions:
                self.register_action(action)
                keys.append(action.key)
        except Exception as e:
            for key in keys:
                self._actions.pop(key, None)
            logger.error(f"[Registry] plugin {name} failed to initialize: {e}", exc_info=True)
            raise PluginInitializationError(name, e) from e
        self._plugin_actions[name] = keys
        logger.info(f"[Registry] plugin {name} initialized actions={len(keys)}")
        return plugin

    def _evict_plugin(self, name: str) -> None:
        self._plugin_futures.pop(name, None)
        for key in self._plugin_actions.pop(name, []):
            self._actions.pop(key, None)
