# parsers/clash_parser.py
import uuid
from typing import Any, Dict, List, Optional, Tuple

from core.errors import DecodeError
from core.models import (
    LogMessage, Provider, ProxyGroup, ProxyHistory, ProxyNode, SubscriptionInfo, VersionInfo,
)
from utils.logger import log

def _require_mapping(data: Any, key: str) -> Dict[str, Any]:
    """顶层结构不对时整个响应都无法使用"""
    if not isinstance(data, dict) or not isinstance(data.get(key), dict):
        raise DecodeError(f"响应缺少 '{key}' 字段")
    return data[key]

def _parse_history(raw: Any) -> Tuple[ProxyHistory, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError("history 不是列表")
    return tuple(ProxyHistory(time=str(h.get('time', '')), delay=max(int(h.get('delay') or 0), 0)) for h in raw)

def parse_proxy_node(p: Dict[str, Any], name: Optional[str] = None) -> Optional[ProxyNode]:
    """把 /proxies 或 provider 中的单个条目解析为节点，格式不对返回None"""
    try:
        history = _parse_history(p.get('history'))
        return ProxyNode(
            id=str(p.get('id') or uuid.uuid4()),
            name=str(name or p['name']),
            type=str(p['type']),
            alive=bool(p.get('alive', True)),
            delay=history[-1].delay if history else 0,
            history=history,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        log.debug(f"Skipping proxy entry due to invalid field: {e}")
        return None

def parse_subscription_info(raw: Any) -> Optional[SubscriptionInfo]:
    # 订阅信息在接口中使用首字母大写的键名
    if not isinstance(raw, dict):
        return None
    try:
        return SubscriptionInfo(
            upload=int(raw.get('Upload') or 0),
            download=int(raw.get('Download') or 0),
            total=int(raw.get('Total') or 0),
            expire=int(raw.get('Expire') or 0),
        )
    except (TypeError, ValueError) as e:
        log.debug(f"Ignoring invalid subscriptionInfo: {e}")
        return None

def parse_providers(data: Any) -> List[Tuple[Provider, Tuple[ProxyNode, ...]]]:
    """
    解析 GET providers/proxies 的响应

    Returns:
        (Provider, 节点列表) 的列表，保持接口返回顺序；单个格式错误的Provider会被跳过
    """
    providers = _require_mapping(data, 'providers')
    results = []
    for name, p in providers.items():
        try:
            proxies = p.get('proxies') or []
            if not isinstance(proxies, list):
                raise ValueError("proxies 不是列表")
            nodes = tuple(n for n in (parse_proxy_node(x) for x in proxies) if n is not None)
            provider = Provider(
                name=str(name),
                type=str(p.get('type', '')),
                vehicle_type=str(p['vehicleType']),
                node_count=len(proxies),
                test_url=p.get('testUrl'),
                subscription_info=parse_subscription_info(p.get('subscriptionInfo')),
                updated_at=p.get('updatedAt'),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            log.debug(f"Skipping provider {name} due to invalid field: {e}")
            continue
        results.append((provider, nodes))
    return results

def parse_proxies(data: Any) -> Tuple[List[ProxyGroup], Dict[str, Dict[str, Any]]]:
    """
    解析 GET proxies 的响应

    Returns:
        (代理组列表, 原始条目字典)；只有声明了 all 的条目才是代理组
    """
    proxies = _require_mapping(data, 'proxies')
    groups: List[ProxyGroup] = []
    entries: Dict[str, Dict[str, Any]] = {}
    for name, p in proxies.items():
        if not isinstance(p, dict):
            log.debug(f"Skipping proxy {name}: entry is not an object")
            continue
        entries[str(name)] = p
        members = p.get('all')
        if members is None:
            continue
        if not isinstance(members, list):
            log.debug(f"Skipping group {name}: 'all' is not a list")
            continue
        groups.append(ProxyGroup(
            name=str(name),
            type=str(p.get('type', '')),
            now=str(p.get('now') or ''),
            all=tuple(str(m) for m in members),
            alive=bool(p.get('alive', True)),
        ))
    return groups, entries

def parse_delay_response(name: str, data: Any) -> Dict[str, int]:
    """
    解析延迟测试响应

    单节点接口返回 {"delay": n}，组接口返回 {节点名: n, ...}
    """
    if not isinstance(data, dict):
        raise DecodeError("延迟响应不是对象")
    if set(data.keys()) == {'delay'}:
        data = {name: data['delay']}
    delays = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        delays[str(key)] = max(int(value), 0)
    return delays

def parse_version(data: Any) -> VersionInfo:
    if not isinstance(data, dict) or 'version' not in data:
        raise DecodeError("版本响应缺少 'version' 字段")
    return VersionInfo(
        version=str(data['version']),
        meta=bool(data.get('meta')),
        premium=bool(data.get('premium')),
    )

def parse_log_message(data: Any, received_at: str) -> Optional[LogMessage]:
    """解析一条日志记录，格式不对返回None"""
    if not isinstance(data, dict):
        return None
    payload = data.get('payload', data.get('message'))
    if not isinstance(payload, str):
        return None
    level = data.get('type', data.get('level', 'info'))
    timestamp = data.get('time', data.get('timestamp', received_at))
    return LogMessage(level=str(level), payload=payload, time=str(timestamp))
