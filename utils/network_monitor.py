#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
網絡可達性監視器
定期檢查是否有處於 up 狀態的非回環網卡，狀態變化時通知訂閱者
"""

import asyncio
from typing import Callable, Optional

import psutil

from utils.events import EventEmitter
from utils.logger import log


def network_available() -> bool:
    """是否存在已啟用且非回環的網絡接口"""
    try:
        stats = psutil.net_if_stats()
    except (OSError, psutil.AccessDenied) as e:
        log.debug(f"網絡監視器: 讀取網卡狀態失敗 {e}")
        return False

    for name, stat in stats.items():
        if not stat.isup:
            continue
        if name == 'lo' or name.lower().startswith('loopback'):
            continue
        return True
    return False


class NetworkMonitor:
    """
    網絡監視器

    用法:
        monitor = NetworkMonitor(interval=5)
        monitor.subscribe(stream.on_network_change)
        monitor.start()
    """

    def __init__(self, interval: float = 5.0, probe: Callable[[], bool] = network_available):
        self.interval = interval
        self.probe = probe
        self.available: Optional[bool] = None
        self.events = EventEmitter()
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, callback: Callable[[bool], None]):
        return self.events.subscribe('change', callback)

    def check(self) -> bool:
        """檢查一次，有變化時發出通知"""
        available = bool(self.probe())
        if self.available is not None and available != self.available:
            log.debug(f"網絡監視器: {'可用' if available else '不可用'}")
            self.events.emit('change', available)
        self.available = available
        return available

    async def _run(self):
        while True:
            self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
