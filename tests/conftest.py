import asyncio
import copy
from typing import Any, Dict, List

import pytest


def history(delay: int) -> List[Dict[str, Any]]:
    return [{'time': '2024-01-01T00:00:00Z', 'delay': delay}]


PROVIDERS = {
    'providers': {
        'default': {
            'name': 'default',
            'type': 'Proxy',
            'vehicleType': 'Compatible',
            'proxies': [
                {'name': 'HK-01', 'type': 'Shadowsocks', 'history': history(80)},
                {'name': 'JP-01', 'type': 'Vmess', 'history': history(210)},
            ],
        },
        'local': {
            'name': 'local',
            'type': 'Proxy',
            'vehicleType': 'File',
            'proxies': [{'name': 'LAN', 'type': 'Socks5', 'history': []}],
        },
        'airport': {
            'name': 'airport',
            'type': 'Proxy',
            'vehicleType': 'File',
            'subscriptionInfo': {'Upload': 100, 'Download': 300, 'Total': 1000, 'Expire': 0},
            'proxies': [{'name': 'US-01', 'type': 'Trojan', 'history': history(450)}],
        },
        'remote': {
            'name': 'remote',
            'type': 'Proxy',
            'vehicleType': 'HTTP',
            'testUrl': 'http://cp.cloudflare.com',
            'proxies': [],
        },
    }
}

PROXIES = {
    'proxies': {
        'GLOBAL': {'type': 'Selector', 'now': 'Proxy', 'all': ['Proxy', 'DIRECT', 'REJECT']},
        'Proxy': {'type': 'Selector', 'now': 'HK-01', 'all': ['HK-01', 'JP-01', 'US-01', 'DIRECT']},
        'Auto': {'type': 'URLTest', 'now': 'JP-01', 'all': ['HK-01', 'JP-01']},
        'DIRECT': {'type': 'Direct', 'history': []},
        'REJECT': {'type': 'Reject', 'history': []},
        'HK-01': {'type': 'Shadowsocks', 'history': history(80)},
    }
}


class FakeClient:
    """内存中的控制端口，按名称返回预设延迟或抛出预设错误"""

    def __init__(self, providers=None, proxies=None):
        self.providers = copy.deepcopy(PROVIDERS if providers is None else providers)
        self.proxies = copy.deepcopy(PROXIES if proxies is None else proxies)
        self.delays: Dict[str, Any] = {}
        self.delay_calls: List[str] = []
        self.selected: List[tuple] = []
        self.updated: List[str] = []
        self.healthchecks: List[tuple] = []
        self.probe_sleep = 0.0
        self.refresh_count = 0

    async def get_providers(self):
        return copy.deepcopy(self.providers)

    async def get_proxies(self):
        self.refresh_count += 1
        return copy.deepcopy(self.proxies)

    async def _delay(self, name):
        self.delay_calls.append(name)
        if self.probe_sleep:
            await asyncio.sleep(self.probe_sleep)
        result = self.delays.get(name, 0)
        if isinstance(result, Exception):
            raise result
        return {name: result}

    async def proxy_delay(self, name, test_url, timeout_ms):
        return await self._delay(name)

    async def group_delay(self, group_name, test_url, timeout_ms):
        self.delay_calls.append(group_name)
        return {k: v for k, v in self.delays.items() if not isinstance(v, Exception)}

    async def select_proxy(self, group_name, proxy_name):
        self.selected.append((group_name, proxy_name))
        self.proxies['proxies'][group_name]['now'] = proxy_name
        return True

    async def update_provider(self, provider_name):
        self.updated.append(provider_name)
        return True

    async def healthcheck_provider(self, provider_name):
        self.healthchecks.append((provider_name, None))
        return True

    async def healthcheck_provider_proxy(self, provider_name, proxy_name, test_url, timeout_ms):
        self.healthchecks.append((provider_name, proxy_name))
        return await self._delay(proxy_name)


@pytest.fixture
def fake_client():
    return FakeClient()
