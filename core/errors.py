# core/errors.py
"""
错误分类
所有对外报告的错误都归入以下几类，并附带可读的说明
"""
import asyncio
import json
import ssl
from typing import Optional

import aiohttp


class ClashDashError(Exception):
    """基础错误类型"""

    kind = "Error"
    label = "未知错误"

    def __init__(self, detail: str = "", status: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status = status

    def describe(self) -> str:
        """返回给界面层的 分类 + 详情 字符串"""
        if self.status is not None:
            return f"{self.label} (HTTP {self.status}): {self.detail}"
        return f"{self.label}: {self.detail}" if self.detail else self.label

    def __str__(self) -> str:
        return self.describe()


class InvalidConfigurationError(ClashDashError):
    kind = "InvalidConfiguration"
    label = "配置无效"


class TransportError(ClashDashError):
    kind = "TransportFailure"
    label = "网络错误"


class TlsError(ClashDashError):
    kind = "TlsFailure"
    label = "SSL/TLS 错误"


class AuthError(ClashDashError):
    kind = "AuthFailure"
    label = "认证失败"


class DecodeError(ClashDashError):
    kind = "DecodeFailure"
    label = "响应格式无效"


class ServerError(ClashDashError):
    kind = "ServerFailure"
    label = "服务器错误"


def error_for_status(status: int, detail: str = "", use_ssl: bool = False) -> Optional[ClashDashError]:
    """
    根据HTTP状态码生成错误，2xx返回None

    HTTPS请求得到400通常意味着服务器只支持明文HTTP。
    """
    if 200 <= status < 300:
        return None
    if use_ssl and status == 400:
        return TlsError(detail or "服务器可能不支持 HTTPS", status=status)
    if status in (401, 403):
        return AuthError(detail or "请检查密钥", status=status)
    return ServerError(detail or "请求失败", status=status)


def classify_exception(exc: BaseException) -> ClashDashError:
    """把 aiohttp / asyncio / ssl / json 的异常映射到错误分类"""
    if isinstance(exc, ClashDashError):
        return exc
    if isinstance(exc, aiohttp.ClientConnectorCertificateError):
        return TlsError(f"证书不受信任: {exc}")
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return TlsError(f"SSL/TLS 连接失败: {exc}")
    if isinstance(exc, aiohttp.InvalidURL):
        return InvalidConfigurationError(f"无效的 URL: {exc}")
    if isinstance(exc, aiohttp.WSServerHandshakeError):
        if exc.status in (401, 403):
            return AuthError("WebSocket 握手被拒绝，请检查密钥", status=exc.status)
        return ServerError(f"WebSocket 握手失败: {exc.message}", status=exc.status)
    if isinstance(exc, aiohttp.ContentTypeError):
        return DecodeError(f"非 JSON 响应: {exc.message}")
    if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
        return DecodeError(str(exc))
    if isinstance(exc, asyncio.TimeoutError):
        return TransportError("连接超时")
    if isinstance(exc, aiohttp.ClientConnectorError):
        return TransportError(f"无法连接到服务器: {exc}")
    if isinstance(exc, (aiohttp.ClientError, ConnectionError, OSError)):
        return TransportError(f"{type(exc).__name__}: {exc}")
    return ClashDashError(f"{type(exc).__name__}: {exc}")
