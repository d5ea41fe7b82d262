#!/usr/bin/env python3
"""
配置文件热重载模块
watch 模式下修改 config.yaml 后自动切换服务器和测速参数
"""
import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from utils.config_utils import DEFAULT_CONFIG, merge_config, parse_env_variables
from utils.logger import log


def validate_config(config: Any) -> bool:
    """验证配置文件有效性"""
    if not isinstance(config, dict):
        log.error("配置文件内容必须是映射")
        return False

    server = config.get('server')
    if not isinstance(server, dict):
        log.error("配置文件缺少必需部分: server")
        return False
    if not server.get('host'):
        log.error("server 缺少必需参数 host")
        return False
    try:
        port = int(server.get('port'))
    except (TypeError, ValueError):
        log.error(f"server.port 无效: {server.get('port')!r}")
        return False
    if not 0 < port < 65536:
        log.error(f"server.port 超出范围: {port}")
        return False

    for section in ('test_settings', 'log_stream', 'ui', 'scheduler'):
        if section in config and not isinstance(config[section], dict):
            log.error(f"配置项 {section} 必须是映射")
            return False
    return True


class ConfigHandler(FileSystemEventHandler):
    """配置文件变化处理器"""

    def __init__(self, config_path: Path, callback: Callable[[Dict[str, Any]], None]):
        self.config_path = config_path
        self.callback = callback
        self.last_modified = 0.0

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() != self.config_path.resolve():
            return

        # 编辑器保存时可能连续触发多次
        current_time = time.time()
        if current_time - self.last_modified < 1.0:
            return
        self.last_modified = current_time

        log.info(f"检测到配置文件变化: {event.src_path}")
        self.reload_config()

    def reload_config(self) -> Optional[Dict[str, Any]]:
        """重新加载配置文件，无效时返回None并保留旧配置"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            log.error(f"读取配置文件失败: {e}")
            return None

        if not isinstance(raw, dict):
            log.error("配置文件格式无效（顶层必须是映射），忽略此次变更")
            return None

        new_config = parse_env_variables(merge_config(DEFAULT_CONFIG, raw))
        if not validate_config(new_config):
            log.error("配置文件格式无效，忽略此次变更")
            return None
        self.callback(new_config)
        log.info("配置文件重载成功")
        return new_config


class ConfigWatcher:
    """
    配置文件监控器

    watchdog 在自己的线程里回调；传入 loop 时回调会转到事件循环中执行。
    """

    def __init__(self, config_path: str, callback: Callable[[Dict[str, Any]], None],
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.config_path = Path(config_path)
        self.callback = callback
        self.loop = loop
        self.observer = Observer()
        self.handler = ConfigHandler(self.config_path, self._dispatch)

    def _dispatch(self, new_config: Dict[str, Any]):
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self.callback, new_config)
        else:
            self.callback(new_config)

    def start(self) -> bool:
        """开始监控"""
        if not self.config_path.exists():
            log.error(f"配置文件不存在: {self.config_path}")
            return False

        # 监控配置文件所在目录
        watch_dir = self.config_path.resolve().parent
        self.observer.schedule(self.handler, str(watch_dir), recursive=False)
        self.observer.start()

        log.info(f"开始监控配置文件: {self.config_path}")
        return True

    def stop(self):
        """停止监控"""
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join()
            log.info("配置文件监控已停止")
