# parsers模块初始化
# 作者: clashdash team

from .clash_parser import (
    parse_delay_response,
    parse_log_message,
    parse_providers,
    parse_proxies,
    parse_proxy_node,
    parse_version,
)

__all__ = [
    'parse_delay_response',
    'parse_log_message',
    'parse_providers',
    'parse_proxies',
    'parse_proxy_node',
    'parse_version',
]
