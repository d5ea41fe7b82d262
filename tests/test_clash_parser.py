import pytest

from core.errors import DecodeError
from parsers import (
    parse_delay_response, parse_log_message, parse_providers, parse_proxies, parse_proxy_node, parse_version,
)


def test_proxy_node_delay_is_last_history_entry():
    node = parse_proxy_node({
        'id': 'abc',
        'name': 'HK-01',
        'type': 'Shadowsocks',
        'alive': True,
        'history': [{'time': 't1', 'delay': 300}, {'time': 't2', 'delay': 120}],
    })
    assert node.id == 'abc'
    assert node.delay == 120
    assert len(node.history) == 2


def test_proxy_node_without_history():
    node = parse_proxy_node({'name': 'JP', 'type': 'Vmess'})
    assert node.delay == 0
    assert node.history == ()
    assert node.id


@pytest.mark.parametrize('entry', [
    {'type': 'Vmess'},
    {'name': 'X'},
    {'name': 'X', 'type': 'Vmess', 'history': 'bad'},
    {'name': 'X', 'type': 'Vmess', 'history': [{'delay': 'slow'}]},
])
def test_invalid_proxy_node_is_none(entry):
    assert parse_proxy_node(entry) is None


def test_parse_providers_skips_bad_entries():
    data = {
        'providers': {
            'ok': {
                'type': 'Proxy',
                'vehicleType': 'HTTP',
                'updatedAt': '2024-05-01T10:00:00Z',
                'subscriptionInfo': {'Upload': 1, 'Download': 2, 'Total': 10, 'Expire': 1700000000},
                'proxies': [{'name': 'A', 'type': 'Trojan'}, {'type': 'missing-name'}],
            },
            'no-vehicle': {'proxies': []},
            'bad-proxies': {'vehicleType': 'HTTP', 'proxies': 'nope'},
        }
    }
    results = parse_providers(data)
    assert len(results) == 1
    provider, nodes = results[0]
    assert provider.name == 'ok'
    assert provider.node_count == 2
    assert [n.name for n in nodes] == ['A']
    assert provider.subscription_info.expire == 1700000000
    assert provider.subscription_info.usage_percent == pytest.approx(30.0)
    assert provider.is_manageable


def test_parse_proxies_only_entries_with_members_are_groups():
    groups, entries = parse_proxies({
        'proxies': {
            'Proxy': {'type': 'Selector', 'now': 'HK', 'all': ['HK', 'JP']},
            'HK': {'type': 'Shadowsocks'},
            'Weird': {'type': 'Selector', 'all': 'HK'},
            'Junk': 'string',
        }
    })
    assert [g.name for g in groups] == ['Proxy']
    assert groups[0].all == ('HK', 'JP')
    assert set(entries) == {'Proxy', 'HK', 'Weird'}


def test_parse_proxies_requires_proxies_key():
    with pytest.raises(DecodeError):
        parse_proxies({'groups': {}})
    with pytest.raises(DecodeError):
        parse_providers([])


def test_single_delay_is_keyed_by_name():
    assert parse_delay_response('HK', {'delay': 88}) == {'HK': 88}


def test_group_delay_map():
    assert parse_delay_response('Proxy', {'HK': 80, 'JP': 0, 'note': 'x', 'flag': True}) == {'HK': 80, 'JP': 0}


def test_delay_response_must_be_object():
    with pytest.raises(DecodeError):
        parse_delay_response('HK', [1, 2])


def test_parse_version():
    info = parse_version({'version': 'v1.18.0', 'meta': True})
    assert info.version == 'v1.18.0'
    assert info.server_type == 'meta'
    assert parse_version({'version': '2023.08.17', 'premium': True}).server_type == 'premium'
    assert parse_version({'version': '1.0'}).server_type == 'unknown'
    with pytest.raises(DecodeError):
        parse_version({})


def test_parse_log_message_variants():
    msg = parse_log_message({'type': 'warning', 'payload': 'dial failed'}, received_at='now')
    assert (msg.level, msg.payload, msg.time) == ('warning', 'dial failed', 'now')

    msg = parse_log_message({'level': 'debug', 'message': 'hello', 'timestamp': 't'}, received_at='now')
    assert (msg.level, msg.payload, msg.time) == ('debug', 'hello', 't')

    assert parse_log_message({'type': 'info'}, received_at='now') is None
    assert parse_log_message(['info', 'x'], received_at='now') is None
