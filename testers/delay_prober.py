# testers/delay_prober.py
import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Deque, Dict, Iterable, List, Optional, Set

from core.errors import ClashDashError, TlsError
from core.graph_merger import GraphMerger
from core.models import SPECIAL_NODES
from utils.config_utils import DEFAULT_TEST_URL
from utils.events import EventEmitter
from utils.logger import log


class InFlightTracker:
    """
    正在测速的节点集合

    通过 hold() 获取标记，任何退出路径（成功、失败、取消）都会释放。
    """

    def __init__(self):
        self._names: Set[str] = set()
        self.events = EventEmitter()

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> frozenset:
        return frozenset(self._names)

    @asynccontextmanager
    async def hold(self, names: Iterable[str]):
        acquired = [n for n in dict.fromkeys(names) if n not in self._names]
        self._names.update(acquired)
        self.events.emit('changed', self.names)
        try:
            yield acquired
        finally:
            self._names.difference_update(acquired)
            self.events.emit('changed', self.names)


class DelayProber:
    """通过控制端口对节点/组发起延迟测试，并把结果写回合并器"""

    def __init__(self, client, merger: GraphMerger, test_url: str = DEFAULT_TEST_URL,
                 timeout_ms: int = 2000, healthcheck_timeout_ms: int = 5000,
                 concurrency: int = 8, settle_delay: float = 0.5, max_errors: int = 100):
        self.client = client
        self.merger = merger
        self.test_url = test_url
        self.timeout_ms = timeout_ms
        self.healthcheck_timeout_ms = healthcheck_timeout_ms
        self.concurrency = max(int(concurrency), 1)
        self.settle_delay = settle_delay
        self.testing = InFlightTracker()
        # 只保留最近的错误
        self.errors: Deque[ClashDashError] = deque(maxlen=max_errors)

    def apply_settings(self, settings: Dict):
        """配置热重载时更新测速参数"""
        self.test_url = settings.get('test_url', self.test_url)
        self.timeout_ms = int(settings.get('timeout_ms', self.timeout_ms))
        self.healthcheck_timeout_ms = int(settings.get('healthcheck_timeout_ms', self.healthcheck_timeout_ms))
        self.concurrency = max(int(settings.get('concurrency', self.concurrency)), 1)
        self.settle_delay = float(settings.get('settle_delay', self.settle_delay))

    def _report(self, name: str, error: ClashDashError):
        self.errors.append(error)
        log.warning(f"  ✗ {name} - {error.describe()}")

    async def _probe_one(self, name: str) -> Dict[str, int]:
        async with self.testing.hold([name]) as acquired:
            if not acquired:
                log.debug(f"{name} 正在测速中，跳过重复请求")
                return {}
            try:
                delays = await self.client.proxy_delay(name, self.test_url, self.timeout_ms)
            except TlsError:
                raise
            except ClashDashError as e:
                self._report(name, e)
                return {}
            self.merger.apply_delays(delays)

        for node_name, delay in delays.items():
            if delay > 0:
                log.debug(f"  ✓ {node_name} - 延迟: {delay}ms")
            else:
                log.debug(f"  ✗ {node_name} - 超时")
        return delays

    async def _probe_many(self, names: List[str]) -> Dict[str, int]:
        """
        并发测试多个节点

        单个节点的失败不影响其他节点；TLS错误说明整个连接配置有问题，立即停止整批。
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        results: Dict[str, int] = {}

        async def worker(name: str):
            async with semaphore:
                results.update(await self._probe_one(name))

        tasks = [asyncio.create_task(worker(n)) for n in dict.fromkeys(names)]
        try:
            for finished in asyncio.as_completed(tasks):
                await finished
        except TlsError as e:
            log.error(f"❌ {e.describe()}，停止本批测速")
            self.errors.append(e)
            raise
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            # 取回所有任务的异常，包括同时失败的其他 worker
            await asyncio.gather(*tasks, return_exceptions=True)
        return results

    async def probe_group(self, group_name: str) -> Dict[str, int]:
        """
        逐个测试组内直接成员（DIRECT/REJECT除外）

        Args:
            group_name: 代理组名称

        Returns:
            Dict[str, int]: 本次拿到的 {节点名: 延迟}
        """
        group = self.merger.snapshot.group(group_name)
        if group is None:
            log.warning(f"代理组不存在: {group_name}")
            return {}

        members = [m for m in group.all if m not in SPECIAL_NODES]
        log.info(f"开始测试代理组 {group_name}: {len(members)} 个成员")
        results = await self._probe_many(members)
        alive = sum(1 for d in results.values() if d > 0)
        log.info(f"✅ {group_name} 测速完成: {alive}/{len(results)} 可用")
        return results

    async def probe_group_bulk(self, group_name: str) -> Dict[str, int]:
        """用 group/{name}/delay 一次测完整个组，由引擎负责并发"""
        group = self.merger.snapshot.group(group_name)
        members = [m for m in group.all if m not in SPECIAL_NODES] if group else []

        async with self.testing.hold(members):
            try:
                delays = await self.client.group_delay(group_name, self.test_url, self.timeout_ms)
            except TlsError:
                raise
            except ClashDashError as e:
                self._report(group_name, e)
                return {}
            self.merger.apply_delays(delays)
        log.info(f"✅ {group_name} 组测速完成: {len(delays)} 个结果")
        return delays

    async def probe_single(self, node_name: str) -> Dict[str, int]:
        if node_name in SPECIAL_NODES:
            log.debug(f"{node_name} 不参与测速")
            return {}
        return await self._probe_one(node_name)

    async def probe_all(self) -> Dict[str, int]:
        """刷新后依次测试所有代理组"""
        await self.merger.refresh()
        results: Dict[str, int] = {}
        for group in self.merger.snapshot.groups:
            results.update(await self.probe_group(group.name))
        return results

    async def probe_provider_healthcheck(self, provider_name: str,
                                         proxy_name: Optional[str] = None) -> Dict[str, int]:
        """
        触发引擎自身的健康检查，然后刷新以获取服务端结果

        Args:
            provider_name: Provider名称
            proxy_name: 只检查其中一个节点时传入

        Returns:
            单节点检查时返回 {节点名: 延迟}，整体检查返回空字典
        """
        delays: Dict[str, int] = {}
        if proxy_name is None:
            log.info(f"触发 Provider 健康检查: {provider_name}")
            try:
                await self.client.healthcheck_provider(provider_name)
            except TlsError:
                raise
            except ClashDashError as e:
                self._report(provider_name, e)
                return {}
        else:
            async with self.testing.hold([proxy_name]) as acquired:
                if not acquired:
                    log.debug(f"{proxy_name} 正在测速中，跳过重复请求")
                    return {}
                try:
                    delays = await self.client.healthcheck_provider_proxy(
                        provider_name, proxy_name, self.test_url, self.healthcheck_timeout_ms)
                except TlsError:
                    raise
                except ClashDashError as e:
                    self._report(proxy_name, e)
                    return {}
                self.merger.apply_delays(delays)

        # 等待引擎处理完成，只是体验上的优化
        await asyncio.sleep(self.settle_delay)
        await self.merger.refresh()
        return delays

    async def update_provider(self, provider_name: str) -> bool:
        """PUT providers/proxies/{name} 更新订阅，然后刷新"""
        try:
            ok = await self.client.update_provider(provider_name)
        except TlsError:
            raise
        except ClashDashError as e:
            self._report(provider_name, e)
            return False
        if not ok:
            return False
        log.info(f"代理提供者 {provider_name} 更新成功")
        await asyncio.sleep(self.settle_delay)
        await self.merger.refresh()
        return True

    async def select_proxy(self, group_name: str, proxy_name: str) -> bool:
        """切换组的当前节点，测试新节点延迟并刷新"""
        try:
            ok = await self.client.select_proxy(group_name, proxy_name)
        except TlsError:
            raise
        except ClashDashError as e:
            self._report(f"{group_name} -> {proxy_name}", e)
            return False
        if not ok:
            return False

        log.info(f"已切换 {group_name} -> {proxy_name}")
        self.merger.update_group_selection(group_name, proxy_name)
        if proxy_name not in SPECIAL_NODES:
            await self.probe_single(proxy_name)
        await self.merger.refresh()
        return True
