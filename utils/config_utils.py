#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置工具模块
默认配置、YAML加载与环境变量占位符解析
"""
import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from utils.logger import log

DEFAULT_TEST_URL = "http://www.gstatic.com/generate_204"

DEFAULT_CONFIG: Dict[str, Any] = {
    'server': {
        'id': 'default',
        'host': '127.0.0.1',
        'port': 9090,
        'secret': '',
        'use_ssl': False,
        'verify_tls': True,
    },
    'test_settings': {
        'test_url': DEFAULT_TEST_URL,
        'timeout_ms': 2000,
        'healthcheck_timeout_ms': 5000,
        'concurrency': 8,
        'settle_delay': 0.5,
        'request_timeout': 10,
    },
    'log_stream': {
        'level': 'info',
        'capacity': 1000,
        'base_delay': 3.0,
        'max_delay': 30.0,
        'max_retries': 5,
        'network_poll_interval': 5.0,
    },
    'ui': {
        'sort_mode': False,
        'hide_unavailable': False,
        'order_file': '.clashdash/order.json',
    },
    'scheduler': {
        'cron_expression': '',
        'interval_minutes': 0,
        'probe': False,
    },
}

def parse_env_variables(config: Any) -> Any:
    """
    递归解析配置中的环境变量占位符 ${VAR_NAME}
    """
    if isinstance(config, dict):
        for key, value in config.items():
            config[key] = parse_env_variables(value)
    elif isinstance(config, list):
        for i, item in enumerate(config):
            config[i] = parse_env_variables(item)
    elif isinstance(config, str):
        match = re.match(r'^\$\{(.*)\}$', config)
        if match:
            return os.getenv(match.group(1), '')  # 环境变量不存在时返回空字符串
    return config

def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """按节合并配置，override中的值优先，返回新字典"""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged

def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    载入配置文件并与默认配置合并

    Args:
        config_path: 配置文件路径，文件不存在时只使用默认配置

    Returns:
        Dict[str, Any]: 完整配置
    """
    user_config: Dict[str, Any] = {}
    if config_path and Path(config_path).exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            log.error(f"載入配置文件失敗: {e}")
            user_config = {}
        if not isinstance(user_config, dict):
            log.error(f"配置文件格式无效（顶层必须是映射）: {config_path}")
            user_config = {}
    elif config_path:
        log.warning(f"配置文件不存在，使用默认配置: {config_path}")

    return parse_env_variables(merge_config(DEFAULT_CONFIG, user_config))
