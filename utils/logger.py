# utils/logger.py
# 作者: clashdash team
import logging
import os
import json
import datetime
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler
from rich.console import Console

class DebugLogger:
    """
    调试日志器
    控制台使用Rich输出，debug模式下额外写入日志文件
    """

    def __init__(self, debug_mode: bool = False, debug_dir: str = "debug"):
        self.debug_mode = debug_mode
        self.debug_dir = Path(debug_dir)
        self.console = Console(stderr=True)
        self.log_file: Optional[Path] = None

        if self.debug_mode:
            self.debug_dir.mkdir(parents=True, exist_ok=True)

        log_level = logging.DEBUG if debug_mode else logging.INFO

        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s - %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        handlers = []

        rich_handler = RichHandler(
            console=self.console,
            rich_tracebacks=True,
            show_time=True,
            show_path=debug_mode
        )
        rich_handler.setLevel(log_level)
        handlers.append(rich_handler)

        # debug模式下同时写文件，便于事后排查WebSocket断线等问题
        if self.debug_mode:
            self.log_file = self.debug_dir / f"clashdash_debug_{datetime.datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        logging.basicConfig(
            level=log_level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=handlers,
            force=True
        )

        # aiohttp自身的访问日志太吵
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

        self.logger = logging.getLogger("clashdash")

        if debug_mode:
            self.logger.debug(f"🐛 Debug模式已启用 - 日志保存至: {self.debug_dir}")
            self.logger.debug(f"📁 日志文件: {self.log_file}")

    def save_debug_info(self, info: dict, filename: str = None):
        """
        保存调试信息到文件

        Args:
            info: 要保存的调试信息字典（例如原始API响应）
            filename: 文件名（可选）
        """
        if not self.debug_mode:
            return

        if filename is None:
            filename = f"debug_info_{datetime.datetime.now().strftime('%Y%m%d_%H%M%S')}.json"

        debug_file = self.debug_dir / filename

        try:
            with open(debug_file, 'w', encoding='utf-8') as f:
                json.dump(info, f, indent=2, ensure_ascii=False, default=str)

            self.logger.debug(f"💾 调试信息已保存: {debug_file}")
        except (OSError, TypeError) as e:
            self.logger.error(f"❌ 保存调试信息失败: {e}")

    def get_logger(self) -> logging.Logger:
        """获取主日志器"""
        return self.logger

# 全局日志器实例
_debug_logger = None

def setup_logger(debug_mode: bool = False, debug_dir: str = "debug") -> DebugLogger:
    """
    配置日志器

    Args:
        debug_mode: 是否启用debug模式
        debug_dir: debug文件夹路径

    Returns:
        DebugLogger实例
    """
    global _debug_logger

    if not debug_mode:
        debug_mode = os.getenv('CLASHDASH_DEBUG', '').lower() in ('true', '1', 'yes')

    _debug_logger = DebugLogger(debug_mode=debug_mode, debug_dir=debug_dir)
    return _debug_logger

def get_logger() -> logging.Logger:
    """
    获取主日志器实例

    Returns:
        logging.Logger实例
    """
    global _debug_logger
    if _debug_logger is None:
        _debug_logger = setup_logger()
    return _debug_logger.get_logger()

def get_debug_logger() -> Optional[DebugLogger]:
    """获取调试日志器实例"""
    return _debug_logger

def save_debug_info(info: dict, filename: str = None):
    """便捷函数：debug模式下保存调试信息"""
    debug_logger = get_debug_logger()
    if debug_logger:
        debug_logger.save_debug_info(info, filename)

# 默认日志器
log = get_logger()
