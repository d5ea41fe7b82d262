# core/api_client.py
"""
Clash External Controller 客户端

负责拼装带鉴权头的请求、URL编码名称，并把各种失败归类为 core.errors 中的错误。
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

import aiohttp
from yarl import URL

from core.errors import (
    ClashDashError, InvalidConfigurationError, ServerError, classify_exception, error_for_status,
)
from core.models import ServerConfig, VersionInfo
from parsers.clash_parser import parse_delay_response, parse_version
from utils.logger import log

# 延迟测试超时时 Clash 返回这些状态码，视为延迟0而不是错误
PROBE_TIMEOUT_STATUSES = (408, 503, 504)

_HOST_PATTERN = re.compile(r'^[A-Za-z0-9._\-:\[\]%]+$')

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class RequestSpec:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Optional[Any] = None


def build_base_url(server: ServerConfig, websocket: bool = False) -> Optional[str]:
    """
    拼接 scheme://host:port，配置无法组成合法URL时返回None
    """
    host = (server.host or '').strip()
    if not host or not _HOST_PATTERN.match(host):
        return None
    try:
        port = int(str(server.port).strip())
    except (TypeError, ValueError):
        return None
    if not 0 < port < 65536:
        return None

    # IPv6 地址需要方括号
    if ':' in host and not host.startswith('['):
        host = f"[{host}]"

    if websocket:
        scheme = 'wss' if server.use_ssl else 'ws'
    else:
        scheme = 'https' if server.use_ssl else 'http'
    return f"{scheme}://{host}:{port}"


def encode_path(segments: List[str]) -> str:
    """逐段编码，组名/节点名中可能有空格、中文、斜杠、emoji"""
    return '/'.join(quote(str(s), safe='') for s in segments)


class ClashAPIClient:
    """
    控制端口 API 客户端

    用法:
        async with ClashAPIClient(server) as client:
            data = await client.get_proxies()
    """

    def __init__(self, server: ServerConfig, request_timeout: float = 10,
                 token_provider: Optional[TokenProvider] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.server = server
        self.request_timeout = request_timeout
        self.token_provider = token_provider
        self.config_error: Optional[InvalidConfigurationError] = None
        self._session = session
        self._owns_session = session is None
        self._ws_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._ws_session is not None and not self._ws_session.closed:
            await self._ws_session.close()
        self._ws_session = None

    def update_server(self, server: ServerConfig):
        """配置热重载后切换服务器，重新校验一次"""
        self.server = server
        self.config_error = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                trust_env=False,  # 控制端口必须直连，不走系统代理
            )
            self._owns_session = True
        return self._session

    @property
    def ssl_option(self):
        # verify_tls 关闭时接受自签名证书（路由器上很常见）
        return bool(self.server.verify_tls)

    async def get_token(self) -> str:
        if self.token_provider is not None:
            return await self.token_provider()
        return self.server.secret

    def build_request(self, method: str, segments: List[str], params: Optional[Dict[str, Any]] = None,
                      json_body: Optional[Any] = None, token: Optional[str] = None) -> Optional[RequestSpec]:
        """
        构造请求

        Args:
            method: HTTP方法
            segments: 路径段，每段单独URL编码
            params: 查询参数
            json_body: JSON请求体
            token: Bearer令牌，None时使用配置中的secret

        Returns:
            RequestSpec，服务器配置无效时返回None
        """
        base = build_base_url(self.server)
        if base is None:
            self._record_config_error()
            return None

        url = f"{base}/{encode_path(segments)}"
        if params:
            url = f"{url}?{urlencode(params)}"

        token = self.server.secret if token is None else token
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['Authorization'] = f"Bearer {token}"
        return RequestSpec(method=method, url=url, headers=headers, json=json_body)

    def _record_config_error(self) -> InvalidConfigurationError:
        # 同一份配置只报告一次
        if self.config_error is None:
            self.config_error = InvalidConfigurationError(
                f"无法用 {self.server.host!r}:{self.server.port!r} 组成有效的 URL")
            log.error(f"❌ {self.config_error}")
        return self.config_error

    def logs_url(self, level: str, token: Optional[str] = None) -> Optional[str]:
        """日志 WebSocket 地址 /logs?token=&level="""
        base = build_base_url(self.server, websocket=True)
        if base is None:
            return None
        token = self.server.secret if token is None else token
        return f"{base}/logs?{urlencode({'token': token, 'level': level})}"

    async def open_logs(self, level: str) -> aiohttp.ClientWebSocketResponse:
        """
        打开日志 WebSocket

        Raises:
            InvalidConfigurationError: 地址无法拼接
            ClashDashError: 握手失败（TLS、鉴权、网络）
        """
        token = await self.get_token()
        url = self.logs_url(level, token)
        if url is None:
            raise self._record_config_error()

        headers = {'Authorization': f"Bearer {token}"} if token else {}
        if self._ws_session is None or self._ws_session.closed:
            # 长连接不能套用普通请求的总超时
            self._ws_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.request_timeout),
                trust_env=False,
            )
        log.debug(f"WS {url.split('?')[0]} level={level}")
        try:
            return await self._ws_session.ws_connect(
                URL(url, encoded=True), headers=headers, ssl=self.ssl_option, heartbeat=30)
        except ClashDashError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    async def _request(self, method: str, segments: List[str], params: Optional[Dict[str, Any]] = None,
                       json_body: Optional[Any] = None, expect_json: bool = True) -> Optional[Any]:
        """
        发送请求并返回解析后的JSON

        Returns:
            解析后的JSON；expect_json为False时返回True；配置无效时返回None

        Raises:
            ClashDashError: 网络、TLS、鉴权、服务器或解码错误
        """
        token = await self.get_token()
        spec = self.build_request(method, segments, params, json_body, token=token)
        if spec is None:
            return None

        log.debug(f"{spec.method} {spec.url}")
        try:
            async with self._get_session().request(
                spec.method,
                URL(spec.url, encoded=True),
                headers=spec.headers,
                json=spec.json,
                ssl=self.ssl_option,
            ) as response:
                body = await response.text()
                error = error_for_status(response.status, body.strip()[:200], use_ssl=self.server.use_ssl)
                if error is not None:
                    raise error
                if not expect_json:
                    return True
                if not body.strip():
                    return {}
                return json.loads(body)
        except ClashDashError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    async def get_version(self) -> Optional[VersionInfo]:
        data = await self._request('GET', ['version'])
        return None if data is None else parse_version(data)

    async def get_proxies(self) -> Optional[Dict[str, Any]]:
        return await self._request('GET', ['proxies'])

    async def get_providers(self) -> Optional[Dict[str, Any]]:
        return await self._request('GET', ['providers', 'proxies'])

    async def select_proxy(self, group_name: str, proxy_name: str) -> bool:
        """PUT proxies/{group} 切换组的当前节点"""
        result = await self._request('PUT', ['proxies', group_name], json_body={'name': proxy_name},
                                     expect_json=False)
        return bool(result)

    async def _delay_request(self, name: str, segments: List[str], params: Dict[str, Any]) -> Dict[str, int]:
        try:
            data = await self._request('GET', segments, params=params)
        except ServerError as e:
            if e.status in PROBE_TIMEOUT_STATUSES:
                log.debug(f"{name} 延迟测试超时 (HTTP {e.status})")
                return {name: 0}
            raise
        if data is None:
            return {}
        return parse_delay_response(name, data)

    async def proxy_delay(self, proxy_name: str, test_url: str, timeout_ms: int) -> Dict[str, int]:
        """GET proxies/{name}/delay，返回 {节点名: 延迟}"""
        params = {'url': test_url, 'timeout': int(timeout_ms)}
        return await self._delay_request(proxy_name, ['proxies', proxy_name, 'delay'], params)

    async def group_delay(self, group_name: str, test_url: str, timeout_ms: int) -> Dict[str, int]:
        """GET group/{name}/delay，返回组内所有成员的延迟"""
        params = {'url': test_url, 'timeout': int(timeout_ms)}
        return await self._delay_request(group_name, ['group', group_name, 'delay'], params)

    async def update_provider(self, provider_name: str) -> bool:
        result = await self._request('PUT', ['providers', 'proxies', provider_name], expect_json=False)
        return bool(result)

    async def healthcheck_provider(self, provider_name: str) -> bool:
        result = await self._request('GET', ['providers', 'proxies', provider_name, 'healthcheck'],
                                     expect_json=False)
        return bool(result)

    async def healthcheck_provider_proxy(self, provider_name: str, proxy_name: str,
                                         test_url: str, timeout_ms: int) -> Dict[str, int]:
        params = {'url': test_url, 'timeout': int(timeout_ms)}
        return await self._delay_request(
            proxy_name, ['providers', 'proxies', provider_name, proxy_name, 'healthcheck'], params)
