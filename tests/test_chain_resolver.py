from core.chain_resolver import (
    DelayStats, delay_level, delay_stats, has_actual_nodes, proxy_chain, resolve, resolve_delay, sort_nodes,
)
from core.models import ProxyGroup, ProxyNode, Snapshot


def node(name, delay=0, type_='Shadowsocks'):
    return ProxyNode(id=name, name=name, type=type_, alive=delay > 0, delay=delay)


def group(name, now, members, type_='Selector'):
    return ProxyGroup(name=name, type=type_, now=now, all=tuple(members))


def make_snapshot(groups, nodes):
    return Snapshot(version=1, nodes=tuple(nodes), groups=tuple(groups))


def test_flat_group_resolves_to_selected_node():
    snap = make_snapshot(
        [group('Proxy', 'HK', ['HK', 'JP'])],
        [node('HK', 80), node('JP', 200)],
    )
    assert resolve(snap, 'Proxy') == ('HK', 80)
    assert resolve(snap, 'JP') == ('JP', 200)


def test_nested_chain_reaches_direct():
    snap = make_snapshot(
        [group('GLOBAL', 'A', ['A', 'B']), group('A', 'DIRECT', ['DIRECT'])],
        [node('DIRECT', 12, 'Special')],
    )
    assert resolve(snap, 'GLOBAL') == ('DIRECT', 12)
    assert proxy_chain(snap, 'GLOBAL') == ['GLOBAL', 'A', 'DIRECT']


def test_cycle_terminates_with_zero_delay():
    snap = make_snapshot(
        [group('A', 'B', ['B']), group('B', 'A', ['A'])],
        [],
    )
    name, delay = resolve(snap, 'A')
    assert delay == 0
    assert name in ('A', 'B')
    assert proxy_chain(snap, 'A') == ['A', 'B', 'A']


def test_self_selected_group_terminates():
    snap = make_snapshot([group('Loop', 'Loop', ['Loop'])], [])
    assert resolve(snap, 'Loop') == ('Loop', 0)


def test_unknown_name_is_unresolved():
    snap = make_snapshot([group('Proxy', 'Gone', ['Gone'])], [])
    assert resolve(snap, 'Proxy') == ('Gone', 0)


def test_reject_counts_as_timeout():
    snap = make_snapshot(
        [group('Block', 'REJECT', ['REJECT'])],
        [node('REJECT', 30, 'Special')],
    )
    assert resolve_delay(snap, 'Block') == 0


def test_delay_levels():
    assert delay_level(0) == 'timeout'
    assert delay_level(1) == 'low'
    assert delay_level(150) == 'low'
    assert delay_level(151) == 'medium'
    assert delay_level(300) == 'medium'
    assert delay_level(301) == 'high'


def test_delay_stats_uses_resolved_delay():
    snap = make_snapshot(
        [
            group('Main', 'Sub', ['Sub', 'HK', 'JP', 'US', 'DEAD', 'REJECT']),
            group('Sub', 'HK', ['HK']),
        ],
        [node('HK', 100), node('JP', 200), node('US', 400), node('DEAD', 0)],
    )
    stats = delay_stats(snap, snap.group('Main'))
    assert stats == DelayStats(low=2, medium=1, high=1, timeout=2)
    assert stats.total == 6


def test_has_actual_nodes():
    snap = make_snapshot(
        [
            group('Empty', '', []),
            group('Wrapper', 'Empty', ['Empty']),
            group('Real', 'HK', ['HK']),
            group('Outer', 'Real', ['Real']),
            group('X', 'Y', ['Y']),
            group('Y', 'X', ['X']),
            group('Direct', 'DIRECT', ['DIRECT']),
        ],
        [node('HK', 80)],
    )
    assert not has_actual_nodes(snap, snap.group('Empty'))
    assert not has_actual_nodes(snap, snap.group('Wrapper'))
    assert has_actual_nodes(snap, snap.group('Real'))
    assert has_actual_nodes(snap, snap.group('Outer'))
    assert not has_actual_nodes(snap, snap.group('X'))
    assert has_actual_nodes(snap, snap.group('Direct'))


def test_sort_nodes_order():
    snap = make_snapshot(
        [group('Proxy', 'HK', ['JP', 'DIRECT', 'HK', 'US', 'REJECT', 'Proxy'])],
        [node('JP', 200), node('HK', 80), node('US', 0), node('Proxy', 0, 'Selector')],
    )
    names = [n.name for n in sort_nodes(snap, snap.group('Proxy').all, 'Proxy')]
    assert names == ['DIRECT', 'REJECT', 'Proxy', 'HK', 'JP', 'US']


def test_sort_nodes_hides_unavailable():
    snap = make_snapshot(
        [group('Proxy', 'HK', ['JP', 'HK', 'US', 'DIRECT'])],
        [node('JP', 200), node('HK', 80), node('US', 0)],
    )
    names = [n.name for n in sort_nodes(snap, snap.group('Proxy').all, 'Proxy', hide_unavailable=True)]
    assert names == ['DIRECT', 'HK', 'JP']
