#!/usr/bin/env python3
"""
ClashDash - Clash/OpenClash 控制台
通過 External Controller 查看代理組、測速、切換節點、查看日誌
"""

import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

from core.api_client import ClashAPIClient
from core.chain_resolver import delay_stats, has_actual_nodes, proxy_chain, resolve, sort_nodes
from core.errors import ClashDashError
from core.graph_merger import GraphMerger
from core.log_stream import LOG_LEVELS, LogStream
from core.models import LogMessage, ProxyGroup, ServerConfig, Snapshot
from testers.delay_prober import DelayProber
from utils.config_utils import load_config
from utils.config_watcher import ConfigWatcher
from utils.logger import log, setup_logger
from utils.network_monitor import NetworkMonitor
from utils.order_store import CustomOrderStore
from utils.scheduler import RefreshScheduler

VERSION = "ClashDash v1.0"


# 顏色和樣式定義
class Colors:
    HEADER = '\033[95m'
    OKBLUE = '\033[94m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'


def format_delay(delay: int) -> str:
    if delay <= 0:
        return f"{Colors.FAIL}超時{Colors.ENDC}"
    if delay <= 150:
        return f"{Colors.OKGREEN}{delay}ms{Colors.ENDC}"
    if delay <= 300:
        return f"{Colors.WARNING}{delay}ms{Colors.ENDC}"
    return f"{Colors.FAIL}{delay}ms{Colors.ENDC}"


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if value < 1024 or unit == 'TB':
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"


def print_title(title: str):
    print(f"\n{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{title}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}")


class ClashDashboard:
    """把各個組件組裝在一起，供命令行使用"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.server = ServerConfig.from_dict(config['server'])
        tests = config['test_settings']
        stream = config['log_stream']
        ui = config['ui']

        self.client = ClashAPIClient(self.server, request_timeout=tests['request_timeout'])
        self.merger = GraphMerger(self.client)
        self.prober = DelayProber(
            self.client, self.merger,
            test_url=tests['test_url'],
            timeout_ms=tests['timeout_ms'],
            healthcheck_timeout_ms=tests['healthcheck_timeout_ms'],
            concurrency=tests['concurrency'],
            settle_delay=tests['settle_delay'],
        )
        self.stream = LogStream(
            self.client,
            level=stream['level'],
            capacity=stream['capacity'],
            base_delay=stream['base_delay'],
            max_delay=stream['max_delay'],
            max_retries=stream['max_retries'],
            settle_delay=tests['settle_delay'],
        )
        self.monitor = NetworkMonitor(interval=stream['network_poll_interval'])
        self.order_store = CustomOrderStore(ui['order_file'], self.server.id)
        self.sort_mode = bool(ui['sort_mode'])
        self.hide_unavailable = bool(ui['hide_unavailable'])

    @property
    def snapshot(self) -> Snapshot:
        return self.merger.snapshot

    async def close(self):
        await self.monitor.stop()
        await self.stream.close()
        await self.merger.close()
        await self.client.close()

    def apply_config(self, new_config: Dict[str, Any]):
        """配置熱重載回調"""
        self.config = new_config
        server = ServerConfig.from_dict(new_config['server'])
        if server != self.server:
            log.info(f"🔄 服務器已切換: {server.host}:{server.port}")
            self.server = server
            self.client.update_server(server)
            self.order_store = CustomOrderStore(new_config['ui']['order_file'], server.id)
        self.prober.apply_settings(new_config['test_settings'])
        self.sort_mode = bool(new_config['ui']['sort_mode'])
        self.hide_unavailable = bool(new_config['ui']['hide_unavailable'])

    async def refresh(self) -> Snapshot:
        await self.merger.refresh()
        return self.snapshot

    def sorted_groups(self) -> List[ProxyGroup]:
        groups = [g for g in self.snapshot.groups if has_actual_nodes(self.snapshot, g)]
        return self.order_store.get_sorted_groups(groups, self.sort_mode)

    # ---- 命令 ----

    async def status(self):
        version = await self.client.get_version()
        await self.refresh()
        print_title(f"🎯 {self.server.host}:{self.server.port}")
        if version is not None:
            print(f"{Colors.OKBLUE}🔧 內核:{Colors.ENDC} {version.version} ({version.server_type})")
        snap = self.snapshot
        print(f"{Colors.OKBLUE}📊 統計:{Colors.ENDC}")
        print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 代理組: {Colors.BOLD}{len(snap.groups)}{Colors.ENDC}")
        print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 節點: {Colors.BOLD}{len(snap.nodes)}{Colors.ENDC}")
        print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 代理提供者: {Colors.BOLD}{len(snap.providers)}{Colors.ENDC}")

    def print_group(self, group: ProxyGroup):
        snap = self.snapshot
        effective, delay = resolve(snap, group.name)
        chain = ' → '.join(proxy_chain(snap, group.name))
        stats = delay_stats(snap, group)
        print(f"{Colors.BOLD}{group.name}{Colors.ENDC} [{group.type}] {chain} {format_delay(delay)}")
        print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 成員 {len(group.all)} | "
              f"{Colors.OKGREEN}低 {stats.low}{Colors.ENDC} "
              f"{Colors.WARNING}中 {stats.medium}{Colors.ENDC} "
              f"{Colors.FAIL}高 {stats.high} 超時 {stats.timeout}{Colors.ENDC}")

    async def show_groups(self):
        await self.refresh()
        print_title("📡 代理組")
        for group in self.sorted_groups():
            self.print_group(group)

    async def show_providers(self):
        await self.refresh()
        print_title("📦 代理提供者")
        for provider in self.snapshot.providers:
            print(f"{Colors.BOLD}{provider.name}{Colors.ENDC} [{provider.vehicle_type}] "
                  f"{provider.node_count} 個節點")
            info = provider.subscription_info
            if info is not None:
                print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 已用 {format_bytes(info.used)} / "
                      f"{format_bytes(info.total)} ({info.usage_percent:.1f}%)")
            if provider.updated_at:
                print(f"   {Colors.OKGREEN}└─{Colors.ENDC} 更新於 {provider.updated_at}")

    def print_nodes(self, group: ProxyGroup):
        nodes = sort_nodes(self.snapshot, group.all, group.name, self.hide_unavailable)
        for node in nodes:
            marker = f"{Colors.OKGREEN}●{Colors.ENDC}" if node.name == group.now else ' '
            testing = f" {Colors.OKBLUE}測速中{Colors.ENDC}" if node.name in self.prober.testing else ''
            print(f" {marker} {node.name} [{node.type}] {format_delay(node.delay)}{testing}")

    async def show_nodes(self, group_name: str):
        await self.refresh()
        group = self.snapshot.group(group_name)
        if group is None:
            print(f"{Colors.FAIL}❌ 代理組不存在: {group_name}{Colors.ENDC}")
            return 1
        self.print_group(group)
        self.print_nodes(group)
        return 0

    async def test(self, group_name: Optional[str], bulk: bool = False):
        await self.refresh()
        if group_name is None:
            await self.prober.probe_all()
            print_title("⚡ 全部代理組測速完成")
            for group in self.sorted_groups():
                self.print_group(group)
            return 0
        if self.snapshot.group(group_name) is None:
            print(f"{Colors.FAIL}❌ 代理組不存在: {group_name}{Colors.ENDC}")
            return 1
        if bulk:
            await self.prober.probe_group_bulk(group_name)
        else:
            await self.prober.probe_group(group_name)
        group = self.snapshot.group(group_name)
        self.print_group(group)
        self.print_nodes(group)
        return 0

    async def test_node(self, node_name: str):
        await self.refresh()
        delays = await self.prober.probe_single(node_name)
        for name, delay in delays.items():
            print(f"{name}: {format_delay(delay)}")
        return 0 if delays else 1

    async def select(self, group_name: str, proxy_name: str):
        await self.refresh()
        if not await self.prober.select_proxy(group_name, proxy_name):
            print(f"{Colors.FAIL}❌ 切換失敗: {group_name} -> {proxy_name}{Colors.ENDC}")
            return 1
        self.print_group(self.snapshot.group(group_name))
        return 0

    async def provider_update(self, provider_name: str):
        await self.refresh()
        ok = await self.prober.update_provider(provider_name)
        print(f"{Colors.OKGREEN}✅ 更新完成{Colors.ENDC}" if ok else f"{Colors.FAIL}❌ 更新失敗{Colors.ENDC}")
        return 0 if ok else 1

    async def healthcheck(self, provider_name: str, proxy_name: Optional[str]):
        await self.refresh()
        delays = await self.prober.probe_provider_healthcheck(provider_name, proxy_name)
        for name, delay in delays.items():
            print(f"{name}: {format_delay(delay)}")
        for node in self.snapshot.provider_nodes.get(provider_name, ()):
            if proxy_name is None or node.name == proxy_name:
                print(f"   {node.name} {format_delay(node.delay)}")
        return 0

    async def logs(self, level: str, duration: Optional[float]):
        def on_log(message: LogMessage):
            color = {'error': Colors.FAIL, 'warning': Colors.WARNING, 'debug': Colors.OKBLUE}.get(message.level, '')
            print(f"{message.time} {color}[{message.level.upper()}]{Colors.ENDC} {message.payload}")

        self.stream.subscribe('log', on_log)
        self.monitor.subscribe(self.stream.on_network_change)
        if level != self.stream.level:
            self.stream.level = level
        self.monitor.start()
        task = self.stream.connect()
        try:
            if duration:
                await asyncio.wait_for(asyncio.shield(task), timeout=duration)
            else:
                await task
        except asyncio.TimeoutError:
            pass
        error = self.stream.last_error
        if not task.cancelled() and task.done() and error is not None:
            print(f"{Colors.FAIL}❌ {error.describe()}{Colors.ENDC}")
            return 1
        return 0

    async def order(self, action: str, names: List[str]):
        if action == 'clear':
            self.order_store.clear()
            return 0
        await self.refresh()
        if action == 'save':
            order = names or [g.name for g in self.sorted_groups()]
            self.order_store.save_custom_order(order)
            return 0
        saved = self.order_store.load_custom_order() or {}
        print_title("🗂️ 代理組排序")
        for index, group in enumerate(self.order_store.get_sorted_groups(self.snapshot.groups, True), 1):
            mark = '' if group.name in saved else f" {Colors.WARNING}(未保存){Colors.ENDC}"
            print(f"{index:2d}. {group.name}{mark}")
        return 0

    async def watch(self, config_path: str):
        """常駐模式：定時刷新，配置文件變化時熱重載"""
        scheduler_config = self.config['scheduler']
        probe = bool(scheduler_config.get('probe'))

        async def job():
            if probe:
                await self.prober.probe_all()
            else:
                await self.refresh()
            print(f"{Colors.OKBLUE}🔄 快照 v{self.snapshot.version}: "
                  f"{len(self.snapshot.groups)} 組 / {len(self.snapshot.nodes)} 節點{Colors.ENDC}")

        scheduler = RefreshScheduler(
            job,
            cron_expression=scheduler_config.get('cron_expression') or '',
            interval_minutes=float(scheduler_config.get('interval_minutes') or 0),
        )
        watcher = ConfigWatcher(config_path, self.apply_config, loop=asyncio.get_running_loop())
        watcher.start()
        await scheduler.run_once()
        if not scheduler.start():
            log.warning("⚠️ 未配置 scheduler.cron_expression 或 scheduler.interval_minutes，只執行一次")
            watcher.stop()
            return 0
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await scheduler.stop()
            watcher.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{VERSION} - Clash/OpenClash 控制台")
    parser.add_argument("-f", "--config", default="config.yaml", help="配置文件路徑")
    parser.add_argument("--debug", action="store_true", help="調試模式，輸出詳細日誌和原始數據")
    parser.add_argument("--version", action="version", version=VERSION)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="顯示內核版本與概況")
    sub.add_parser("groups", help="列出代理組及當前鏈路")
    sub.add_parser("providers", help="列出代理提供者")

    p = sub.add_parser("nodes", help="列出代理組成員")
    p.add_argument("group")

    p = sub.add_parser("test", help="代理組測速，不指定組時測試全部")
    p.add_argument("group", nargs="?")
    p.add_argument("--bulk", action="store_true", help="使用 group/{name}/delay 整組測速")

    p = sub.add_parser("test-node", help="單節點測速")
    p.add_argument("node")

    p = sub.add_parser("select", help="切換代理組的當前節點")
    p.add_argument("group")
    p.add_argument("proxy")

    p = sub.add_parser("provider-update", help="更新代理提供者")
    p.add_argument("provider")

    p = sub.add_parser("healthcheck", help="觸發代理提供者健康檢查")
    p.add_argument("provider")
    p.add_argument("proxy", nargs="?")

    p = sub.add_parser("logs", help="實時查看內核日誌")
    p.add_argument("--level", choices=LOG_LEVELS, default=None)
    p.add_argument("--duration", type=float, default=None, help="持續秒數，默認一直運行")

    p = sub.add_parser("order", help="管理代理組自定義排序")
    p.add_argument("action", choices=("show", "save", "clear"))
    p.add_argument("names", nargs="*")

    sub.add_parser("watch", help="常駐運行，定時刷新並熱重載配置")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """主入口函數"""
    args = build_parser().parse_args(argv)
    setup_logger(debug_mode=args.debug)
    config = load_config(args.config)
    dashboard = ClashDashboard(config)

    try:
        if args.command == "status":
            await dashboard.status()
            return 0
        if args.command == "groups":
            await dashboard.show_groups()
            return 0
        if args.command == "providers":
            await dashboard.show_providers()
            return 0
        if args.command == "nodes":
            return await dashboard.show_nodes(args.group)
        if args.command == "test":
            return await dashboard.test(args.group, args.bulk)
        if args.command == "test-node":
            return await dashboard.test_node(args.node)
        if args.command == "select":
            return await dashboard.select(args.group, args.proxy)
        if args.command == "provider-update":
            return await dashboard.provider_update(args.provider)
        if args.command == "healthcheck":
            return await dashboard.healthcheck(args.provider, args.proxy)
        if args.command == "logs":
            return await dashboard.logs(args.level or config['log_stream']['level'], args.duration)
        if args.command == "order":
            return await dashboard.order(args.action, args.names)
        if args.command == "watch":
            return await dashboard.watch(args.config)
        return 1
    except ClashDashError as e:
        print(f"\n{Colors.FAIL}❌ {e.describe()}{Colors.ENDC}")
        return 1
    finally:
        await dashboard.close()


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        log.info("程序被用戶中斷")
        sys.exit(130)


if __name__ == "__main__":
    run()
