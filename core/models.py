# core/models.py
"""
数据模型
节点、代理组、Provider与合并后的不可变快照
"""
import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Any

SPECIAL_NODES = ("DIRECT", "REJECT")
GLOBAL_GROUP = "GLOBAL"
SPECIAL_TYPE = "Special"
# 可以作为节点被其他组引用的组类型
SELECTOR_TYPES = ("Selector", "URLTest")
HISTORY_LIMIT = 20


@dataclass
class ServerConfig:
    """Clash控制端口的连接信息"""
    host: str
    port: Any
    secret: str = ""
    use_ssl: bool = False
    verify_tls: bool = True
    id: str = "default"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        data = data or {}
        return cls(
            host=str(data.get('host') or '').strip(),
            port=data.get('port'),
            secret=str(data.get('secret') or ''),
            use_ssl=bool(data.get('use_ssl', False)),
            verify_tls=bool(data.get('verify_tls', True)),
            id=str(data.get('id') or f"{data.get('host')}:{data.get('port')}"),
        )


@dataclass(frozen=True)
class ProxyHistory:
    time: str
    delay: int


@dataclass(frozen=True)
class ProxyNode:
    id: str
    name: str
    type: str
    alive: bool
    delay: int
    history: Tuple[ProxyHistory, ...] = ()

    def with_delay(self, delay: int) -> "ProxyNode":
        """返回更新了延迟的新节点，并追加一条历史记录"""
        delay = max(int(delay), 0)
        sample = ProxyHistory(time=datetime.datetime.now(datetime.timezone.utc).isoformat(), delay=delay)
        history = (self.history + (sample,))[-HISTORY_LIMIT:]
        return ProxyNode(
            id=self.id,
            name=self.name,
            type=self.type,
            alive=delay > 0,
            delay=delay,
            history=history,
        )


@dataclass(frozen=True)
class ProxyGroup:
    name: str
    type: str
    now: str
    all: Tuple[str, ...]
    alive: bool = True


@dataclass(frozen=True)
class SubscriptionInfo:
    upload: int
    download: int
    total: int
    expire: int

    @property
    def used(self) -> int:
        return self.upload + self.download

    @property
    def usage_percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.used / self.total * 100


@dataclass(frozen=True)
class Provider:
    name: str
    type: str
    vehicle_type: str
    node_count: int
    test_url: Optional[str] = None
    subscription_info: Optional[SubscriptionInfo] = None
    updated_at: Optional[str] = None

    @property
    def is_manageable(self) -> bool:
        """只有HTTP来源或带订阅信息的Provider才单独展示"""
        return self.vehicle_type == "HTTP" or self.subscription_info is not None


@dataclass(frozen=True)
class Snapshot:
    """
    一次合并的结果

    只通过整体替换发布，读者永远看不到半更新的状态。
    """
    version: int = 0
    nodes: Tuple[ProxyNode, ...] = ()
    groups: Tuple[ProxyGroup, ...] = ()
    providers: Tuple[Provider, ...] = ()
    provider_nodes: Dict[str, Tuple[ProxyNode, ...]] = field(default_factory=dict)
    _node_index: Dict[str, ProxyNode] = field(init=False, repr=False, compare=False)
    _group_index: Dict[str, ProxyGroup] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        node_index: Dict[str, ProxyNode] = {}
        for node in self.nodes:
            node_index.setdefault(node.name, node)
        object.__setattr__(self, '_node_index', node_index)
        object.__setattr__(self, '_group_index', {g.name: g for g in self.groups})

    def node(self, name: str) -> Optional[ProxyNode]:
        return self._node_index.get(name)

    def group(self, name: str) -> Optional[ProxyGroup]:
        return self._group_index.get(name)

    @property
    def group_names(self) -> List[str]:
        return [g.name for g in self.groups]


@dataclass(frozen=True)
class LogMessage:
    level: str
    payload: str
    time: str


@dataclass(frozen=True)
class VersionInfo:
    version: str
    meta: bool = False
    premium: bool = False

    @property
    def server_type(self) -> str:
        if self.premium:
            return "premium"
        if self.meta:
            return "meta"
        return "unknown"
