# core/chain_resolver.py
"""
代理链解析

组的 now 可以指向另一个组，逐层跟随直到具体节点。
访问过的名称再次出现即视为循环，按未解析处理（延迟0）。
"""
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from core.models import SPECIAL_NODES, ProxyGroup, ProxyNode, SPECIAL_TYPE, Snapshot

LOW_DELAY_MAX = 150
MEDIUM_DELAY_MAX = 300


@dataclass(frozen=True)
class DelayStats:
    low: int = 0
    medium: int = 0
    high: int = 0
    timeout: int = 0

    @property
    def total(self) -> int:
        return self.low + self.medium + self.high + self.timeout


def delay_level(delay: int) -> str:
    """0 = timeout, 1-150 = low, 151-300 = medium, >300 = high"""
    if delay <= 0:
        return "timeout"
    if delay <= LOW_DELAY_MAX:
        return "low"
    if delay <= MEDIUM_DELAY_MAX:
        return "medium"
    return "high"


def _step_limit(snapshot: Snapshot) -> int:
    # visited 集合只增不减，本身就保证终止；这里再加一个上限
    return len(snapshot.groups) + len(snapshot.nodes) + 1


def resolve(snapshot: Snapshot, name: str, visited: Iterable[str] = ()) -> Tuple[str, int]:
    """
    解析名称对应的实际节点与延迟

    Args:
        snapshot: 当前快照
        name: 组名或节点名
        visited: 已经访问过的组名

    Returns:
        (实际节点名, 延迟)；循环或未知名称返回 (名称, 0)
    """
    seen = set(visited)
    current = name
    for _ in range(_step_limit(snapshot)):
        if current in seen:
            return current, 0
        group = snapshot.group(current)
        if group is not None:
            seen.add(current)
            current = group.now
            continue
        node = snapshot.node(current)
        if node is not None:
            return node.name, node.delay
        return current, 0
    return current, 0


def resolve_delay(snapshot: Snapshot, name: str, visited: Iterable[str] = ()) -> int:
    """只取延迟的版本，REJECT 计为超时"""
    effective, delay = resolve(snapshot, name, visited)
    if effective == "REJECT":
        return 0
    return delay


def proxy_chain(snapshot: Snapshot, name: str) -> List[str]:
    """返回从 name 出发经过的所有名称，例如 ['GLOBAL', 'Proxy', 'HK-01']"""
    chain: List[str] = []
    seen = set()
    current = name
    for _ in range(_step_limit(snapshot)):
        chain.append(current)
        if current in seen:
            break
        group = snapshot.group(current)
        if group is None:
            break
        seen.add(current)
        current = group.now
    return chain


def delay_stats(snapshot: Snapshot, group: ProxyGroup) -> DelayStats:
    """按解析后的延迟统计组内成员的分布"""
    counts = {"low": 0, "medium": 0, "high": 0, "timeout": 0}
    for member in group.all:
        counts[delay_level(resolve_delay(snapshot, member))] += 1
    return DelayStats(**counts)


def has_actual_nodes(snapshot: Snapshot, group: ProxyGroup, visited: Iterable[str] = ()) -> bool:
    """组内（递归）是否至少有一个实际节点"""
    seen = set(visited)
    seen.add(group.name)
    for member in group.all:
        if member in SPECIAL_NODES:
            return True
        if member in seen:
            continue
        sub_group = snapshot.group(member)
        if sub_group is None:
            return True
        if has_actual_nodes(snapshot, sub_group, seen):
            return True
    return False


def sort_nodes(snapshot: Snapshot, names: Sequence[str], group_name: str = "",
               hide_unavailable: bool = False) -> List[ProxyNode]:
    """
    组内节点的展示顺序

    DIRECT、REJECT、组自身排在最前，其余按延迟升序，未测速的排在最后。
    """
    matched: List[ProxyNode] = []
    for name in names:
        node = snapshot.node(name)
        if node is None and name in SPECIAL_NODES:
            node = ProxyNode(id=name, name=name, type=SPECIAL_TYPE, alive=True, delay=0)
        if node is not None:
            matched.append(node)

    if hide_unavailable:
        matched = [n for n in matched if n.name in SPECIAL_NODES or n.delay > 0]

    def key(node: ProxyNode):
        if node.name == "DIRECT":
            return (0, 0)
        if node.name == "REJECT":
            return (1, 0)
        if group_name and node.name == group_name:
            return (2, 0)
        if node.delay == 0:
            return (4, 0)
        return (3, node.delay)

    return sorted(matched, key=key)
