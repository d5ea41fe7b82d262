# core/graph_merger.py
"""
代理图合并器

从 providers/proxies 与 proxies 两个接口拉取数据，合并成统一的节点/组快照。
快照只整体替换发布；较新的刷新会取消较旧的刷新，旧结果即使晚到也会被丢弃。
"""
import asyncio
import uuid
from typing import Dict, List, Mapping, Optional, Tuple

from core.errors import ClashDashError, classify_exception
from core.models import SELECTOR_TYPES, SPECIAL_NODES, SPECIAL_TYPE, ProxyGroup, ProxyNode, Snapshot
from parsers.clash_parser import parse_providers, parse_proxies, parse_proxy_node
from utils.events import EventEmitter
from utils.logger import log, save_debug_info


class GraphMerger:
    """持有当前发布的快照，并负责刷新"""

    def __init__(self, client):
        self.client = client
        self.events = EventEmitter()
        self.last_error: Optional[ClashDashError] = None
        self._snapshot = Snapshot()
        self._generation = 0
        self._version = 0
        self._current_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, event: str, callback):
        """事件: snapshot(Snapshot), refresh_failed(ClashDashError)"""
        return self.events.subscribe(event, callback)

    def _publish(self, snapshot: Snapshot):
        self._snapshot = snapshot
        self.events.emit('snapshot', snapshot)

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    async def refresh(self) -> Optional[Snapshot]:
        """
        拉取并合并最新数据

        Returns:
            新发布的快照；被更新的刷新取代或配置无效时返回None

        Raises:
            ClashDashError: 拉取或解码失败，此时已发布的快照保持不变
        """
        self._generation += 1
        generation = self._generation

        if self._current_task is not None and not self._current_task.done():
            log.debug("新的刷新请求，取消进行中的刷新")
            self._current_task.cancel()

        task = asyncio.create_task(self._fetch_and_merge())
        self._current_task = task

        try:
            snapshot = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                log.debug(f"刷新 #{generation} 已被 #{self._generation} 取代")
                return None
            raise
        except Exception as e:
            error = classify_exception(e)
            if generation != self._generation:
                log.debug(f"丢弃过期刷新 #{generation} 的错误: {error}")
                return None
            self.last_error = error
            log.warning(f"⚠️ 刷新代理数据失败: {error.describe()}")
            self.events.emit('refresh_failed', error)
            if error is e:
                raise
            raise error from e

        if snapshot is None or generation != self._generation:
            return None

        self.last_error = None
        self._publish(snapshot)
        log.debug(f"快照 v{snapshot.version} 已发布: {len(snapshot.groups)} 个组, {len(snapshot.nodes)} 个节点")
        return snapshot

    async def _fetch_and_merge(self) -> Optional[Snapshot]:
        providers_data = await self.client.get_providers()
        if providers_data is None:
            return None
        proxies_data = await self.client.get_proxies()
        if proxies_data is None:
            return None
        save_debug_info({'providers': providers_data, 'proxies': proxies_data}, 'last_refresh.json')
        # 合并时读取当前快照，保证特殊节点的延迟取自最新状态
        return self.merge(providers_data, proxies_data)

    def merge(self, providers_data, proxies_data) -> Snapshot:
        """
        纯合并步骤，不做任何网络请求

        Args:
            providers_data: GET providers/proxies 的原始JSON
            proxies_data: GET proxies 的原始JSON

        Returns:
            新快照（尚未发布）
        """
        parsed_providers = parse_providers(providers_data)
        groups, entries = parse_proxies(proxies_data)

        visible_providers = []
        provider_nodes: Dict[str, Tuple[ProxyNode, ...]] = {}
        all_provider_nodes: List[ProxyNode] = []
        for provider, nodes in parsed_providers:
            # 引擎的 default provider 装着配置文件里的节点，所以节点表取自所有provider
            all_provider_nodes.extend(nodes)
            if provider.is_manageable:
                visible_providers.append(provider)
                provider_nodes[provider.name] = nodes

        special_nodes = [self._special_node(name) for name in SPECIAL_NODES]

        selector_nodes = []
        for name, entry in entries.items():
            if entry.get('type') not in SELECTOR_TYPES:
                continue
            node = parse_proxy_node(entry, name=name)
            if node is not None:
                selector_nodes.append(node)

        merged: List[ProxyNode] = []
        seen = set()
        for node in special_nodes + selector_nodes + all_provider_nodes:
            if node.name in seen:
                continue
            seen.add(node.name)
            merged.append(node)

        return Snapshot(
            version=self._next_version(),
            nodes=tuple(merged),
            groups=tuple(groups),
            providers=tuple(visible_providers),
            provider_nodes=provider_nodes,
        )

    def _special_node(self, name: str) -> ProxyNode:
        existing = self._snapshot.node(name)
        if existing is not None:
            return existing
        return ProxyNode(id=str(uuid.uuid4()), name=name, type=SPECIAL_TYPE, alive=True, delay=0)

    def apply_delays(self, delays: Mapping[str, int]) -> Snapshot:
        """
        把测速结果写回节点表，发布新版本快照

        Args:
            delays: {节点名: 延迟毫秒}

        Returns:
            发布后的快照
        """
        if not delays:
            return self._snapshot

        current = self._snapshot

        def update(node: ProxyNode) -> ProxyNode:
            if node.name in delays:
                return node.with_delay(delays[node.name])
            return node

        nodes = tuple(update(n) for n in current.nodes)
        provider_nodes = {
            name: tuple(update(n) for n in members)
            for name, members in current.provider_nodes.items()
        }
        snapshot = Snapshot(
            version=self._next_version(),
            nodes=nodes,
            groups=current.groups,
            providers=current.providers,
            provider_nodes=provider_nodes,
        )
        self._publish(snapshot)
        return snapshot

    def update_group_selection(self, group_name: str, proxy_name: str) -> Snapshot:
        """切换成功后在本地先更新组的 now，等下一次刷新再校正"""
        current = self._snapshot
        if current.group(group_name) is None:
            return current
        groups = tuple(
            ProxyGroup(name=g.name, type=g.type, now=proxy_name, all=g.all, alive=g.alive)
            if g.name == group_name else g
            for g in current.groups
        )
        snapshot = Snapshot(
            version=self._next_version(),
            nodes=current.nodes,
            groups=groups,
            providers=current.providers,
            provider_nodes=current.provider_nodes,
        )
        self._publish(snapshot)
        return snapshot

    async def close(self):
        if self._current_task is not None and not self._current_task.done():
            self._current_task.cancel()
            await asyncio.gather(self._current_task, return_exceptions=True)
        self.events.clear()
