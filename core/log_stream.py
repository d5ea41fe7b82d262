# core/log_stream.py
"""
日志流

通过 /logs WebSocket 持续接收引擎日志，保存在固定容量的环形缓冲中。
断线按指数退避重连；TLS/鉴权/配置错误不自动重试。
"""
import asyncio
import json
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Deque, List, Optional

import aiohttp

from core.errors import (
    AuthError, ClashDashError, InvalidConfigurationError, TlsError, TransportError, classify_exception,
)
from core.models import LogMessage, ServerConfig
from parsers.clash_parser import parse_log_message
from utils.events import EventEmitter
from utils.logger import log

KEEPALIVE_FRAME = "ping"
LOG_LEVELS = ("debug", "info", "warning", "error", "silent")

# 这些错误重试也不会好转
TERMINAL_ERRORS = (TlsError, AuthError, InvalidConfigurationError)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class LogStream:
    """
    日志流连接

    事件:
        state(ConnectionState): 状态变化
        log(LogMessage): 收到一条日志
        error(ClashDashError): 连接出错
    """

    def __init__(self, client, level: str = "info", capacity: int = 1000,
                 base_delay: float = 3.0, max_delay: float = 30.0,
                 max_retries: int = 5, settle_delay: float = 0.5):
        self.client = client
        self.level = level
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.settle_delay = settle_delay
        self.logs: Deque[LogMessage] = deque(maxlen=capacity)
        self.events = EventEmitter()
        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self.last_error: Optional[ClashDashError] = None
        self._task: Optional[asyncio.Task] = None
        self._user_disconnected = False

    @property
    def capacity(self) -> int:
        return self.logs.maxlen

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, event: str, callback):
        return self.events.subscribe(event, callback)

    def recent(self, count: Optional[int] = None) -> List[LogMessage]:
        items = list(self.logs)
        return items if count is None else items[-count:]

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        log.debug(f"日志流状态: {self.state.value} -> {state.value}")
        self.state = state
        self.events.emit('state', state)

    def reconnect_delay(self, attempt: int) -> float:
        """
        第 attempt 次重试前的等待时间

        base * min(2^(attempt-1), 10)，不超过 max_delay
        """
        factor = min(2 ** max(attempt - 1, 0), 10)
        return min(self.base_delay * factor, self.max_delay)

    def connect(self, server: Optional[ServerConfig] = None) -> asyncio.Task:
        """
        开始连接（需要在事件循环内调用）

        Args:
            server: 切换到新的服务器；None 表示沿用当前配置

        Returns:
            后台连接任务
        """
        if server is not None:
            self.client.update_server(server)
        self._user_disconnected = False
        if self.is_running:
            return self._task
        self.retry_count = 0
        self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def _run_loop(self):
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._listen()
                error = TransportError("日志连接被服务器关闭")
            except asyncio.CancelledError:
                raise
            except ClashDashError as e:
                error = e
            except Exception as e:
                error = classify_exception(e)

            self.last_error = error
            self.events.emit('error', error)

            if isinstance(error, TERMINAL_ERRORS):
                log.error(f"❌ 日志流连接失败: {error.describe()}")
                self._set_state(ConnectionState.DISCONNECTED)
                return

            self.retry_count += 1
            if self.retry_count > self.max_retries:
                log.warning(f"⚠️ 日志流重连 {self.max_retries} 次仍失败，停止重连")
                self._set_state(ConnectionState.DISCONNECTED)
                return

            delay = self.reconnect_delay(self.retry_count)
            log.warning(f"⚠️ 日志流断开: {error.describe()}，{delay:.0f}秒后第{self.retry_count}次重连")
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(delay)

    async def _listen(self):
        ws = await self.client.open_logs(self.level)
        try:
            self._set_state(ConnectionState.CONNECTED)
            log.info(f"📜 日志流已连接 (level={self.level})")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self.handle_frame(msg.data.decode('utf-8', errors='replace'))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise classify_exception(ws.exception() or ConnectionError("WebSocket 错误"))
        finally:
            await ws.close()

    def handle_frame(self, text: str) -> Optional[LogMessage]:
        """
        处理一帧数据

        Returns:
            解析出的日志；心跳或格式错误时返回None
        """
        # 收到任何数据都说明连接是好的
        self.retry_count = 0
        if text.strip() == KEEPALIVE_FRAME:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            log.debug(f"丢弃无法解析的日志帧: {text[:80]!r}")
            return None

        message = parse_log_message(data, received_at=datetime.now().isoformat(timespec='seconds'))
        if message is None:
            log.debug(f"丢弃格式不正确的日志帧: {text[:80]!r}")
            return None

        self.logs.append(message)
        self.events.emit('log', message)
        return message

    async def _stop(self):
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set_state(ConnectionState.DISCONNECTED)

    async def disconnect(self, clear_logs: bool = True):
        """主动断开，之后网络恢复也不会自动重连"""
        self._user_disconnected = True
        await self._stop()
        if clear_logs:
            self.logs.clear()
        log.info("日志流已断开")

    async def set_level(self, level: str):
        """切换日志级别，需要断开后重新连接"""
        if level == self.level:
            return
        if level not in LOG_LEVELS:
            raise InvalidConfigurationError(f"未知的日志级别: {level}")
        log.info(f"切换日志级别: {self.level} -> {level}")
        self.level = level
        await self._stop()
        await asyncio.sleep(self.settle_delay)
        self.connect()

    def on_network_change(self, available: bool):
        """网络可达性回调"""
        if not available:
            log.info("📡 网络不可用")
            return
        if self._user_disconnected or self.is_running:
            return
        if self.state is ConnectionState.DISCONNECTED:
            log.info("📡 网络已恢复，重新连接日志流")
            self.connect()

    async def close(self):
        await self.disconnect(clear_logs=False)
        self.events.clear()
