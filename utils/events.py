#!/usr/bin/env python3
"""
组件间事件通道
订阅时返回取消函数，组件销毁时显式退订
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List

from utils.logger import log

Listener = Callable[..., None]

class EventEmitter:
    """简单的同步事件分发器"""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, event: str, callback: Listener) -> Callable[[], None]:
        """
        订阅事件

        Args:
            event: 事件名
            callback: 回调函数

        Returns:
            取消订阅的函数
        """
        self._listeners[event].append(callback)

        def unsubscribe():
            self.unsubscribe(event, callback)

        return unsubscribe

    def unsubscribe(self, event: str, callback: Listener):
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event: str, *args: Any):
        # 复制一份，回调中退订不影响本次分发
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                log.error(f"事件回调失败 [{event}]: {e}")

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def clear(self):
        self._listeners.clear()
