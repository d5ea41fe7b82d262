import asyncio
from urllib.parse import quote

import pytest
from aiohttp import web
from aiohttp import test_utils

from core.api_client import ClashAPIClient, build_base_url, encode_path
from core.errors import AuthError, DecodeError, ServerError, TlsError, TransportError, error_for_status
from core.models import ServerConfig


def test_build_base_url():
    assert build_base_url(ServerConfig(host='192.168.1.1', port=9090)) == 'http://192.168.1.1:9090'
    assert build_base_url(ServerConfig(host='router.lan', port='9443', use_ssl=True)) == 'https://router.lan:9443'
    assert build_base_url(ServerConfig(host='::1', port=9090), websocket=True) == 'ws://[::1]:9090'


@pytest.mark.parametrize('host,port', [
    ('', 9090),
    ('bad host', 9090),
    ('example.com/path', 9090),
    ('127.0.0.1', 'abc'),
    ('127.0.0.1', 0),
    ('127.0.0.1', 70000),
    ('127.0.0.1', None),
])
def test_invalid_server_yields_no_request(host, port):
    client = ClashAPIClient(ServerConfig(host=host, port=port))
    assert client.build_request('GET', ['proxies']) is None
    assert client.config_error is not None
    assert asyncio.run(client.get_proxies()) is None


def test_path_segments_are_percent_encoded():
    name = '🇭🇰 香港/01?x'
    assert encode_path(['proxies', name, 'delay']) == f"proxies/{quote(name, safe='')}/delay"

    client = ClashAPIClient(ServerConfig(host='127.0.0.1', port=9090, secret='abc'))
    spec = client.build_request('GET', ['proxies', name, 'delay'], params={'timeout': 2000})
    assert ' ' not in spec.url
    assert '%2F01%3Fx/delay?timeout=2000' in spec.url
    assert spec.headers['Authorization'] == 'Bearer abc'
    assert spec.headers['Content-Type'] == 'application/json'


def test_no_secret_means_no_auth_header():
    client = ClashAPIClient(ServerConfig(host='127.0.0.1', port=9090))
    assert 'Authorization' not in client.build_request('GET', ['version']).headers


def test_error_for_status():
    assert error_for_status(204) is None
    assert isinstance(error_for_status(400, use_ssl=True), TlsError)
    assert isinstance(error_for_status(400), ServerError)
    assert isinstance(error_for_status(401), AuthError)
    err = error_for_status(502, 'bad gateway')
    assert isinstance(err, ServerError)
    assert err.status == 502
    assert '502' in err.describe()


def make_app(seen):
    async def version(request):
        seen['auth'] = request.headers.get('Authorization')
        return web.json_response({'version': 'v1.18.1', 'meta': True})

    async def proxy_delay(request):
        name = request.match_info['name']
        seen.setdefault('delay', []).append((name, dict(request.query)))
        if name == 'slow':
            return web.json_response({'message': 'Timeout'}, status=504)
        return web.json_response({'delay': 123})

    async def select(request):
        seen['select'] = (request.match_info['name'], await request.json())
        return web.Response(status=204)

    async def providers(request):
        if request.headers.get('Authorization') != 'Bearer s3cret':
            return web.json_response({'message': 'Unauthorized'}, status=401)
        return web.json_response({'providers': {}})

    async def broken(request):
        return web.Response(text='not json', status=200)

    app = web.Application()
    app.router.add_get('/version', version)
    app.router.add_get('/proxies/{name}/delay', proxy_delay)
    app.router.add_put('/proxies/{name}', select)
    app.router.add_get('/providers/proxies', providers)
    app.router.add_get('/proxies', broken)
    return app


def run_against_server(secret, body):
    seen = {}

    async def scenario():
        server = test_utils.TestServer(make_app(seen))
        await server.start_server()
        client = ClashAPIClient(ServerConfig(host='127.0.0.1', port=server.port, secret=secret))
        try:
            return await body(client)
        finally:
            await client.close()
            await server.close()

    return asyncio.run(scenario()), seen


def test_requests_carry_bearer_token():
    async def body(client):
        return await client.get_version()

    info, seen = run_against_server('s3cret', body)
    assert info.version == 'v1.18.1'
    assert info.server_type == 'meta'
    assert seen['auth'] == 'Bearer s3cret'


def test_token_provider_overrides_secret():
    seen = {}

    async def scenario():
        server = test_utils.TestServer(make_app(seen))
        await server.start_server()

        async def fetch_token():
            return 'session-token'

        client = ClashAPIClient(ServerConfig(host='127.0.0.1', port=server.port, secret='static'),
                                token_provider=fetch_token)
        try:
            await client.get_version()
        finally:
            await client.close()
            await server.close()

    asyncio.run(scenario())
    assert seen['auth'] == 'Bearer session-token'


def test_delay_is_normalized_to_name():
    async def body(client):
        return await client.proxy_delay('香港 01', 'http://www.gstatic.com/generate_204', 2000)

    result, seen = run_against_server('', body)
    assert result == {'香港 01': 123}
    name, query = seen['delay'][0]
    assert name == '香港 01'
    assert query == {'url': 'http://www.gstatic.com/generate_204', 'timeout': '2000'}


def test_probe_timeout_status_means_zero_delay():
    async def body(client):
        return await client.proxy_delay('slow', 'http://www.gstatic.com/generate_204', 2000)

    result, _ = run_against_server('', body)
    assert result == {'slow': 0}


def test_select_proxy_sends_name():
    async def body(client):
        return await client.select_proxy('Proxy', 'JP-01')

    ok, seen = run_against_server('', body)
    assert ok is True
    assert seen['select'] == ('Proxy', {'name': 'JP-01'})


def test_wrong_secret_is_auth_error():
    async def body(client):
        with pytest.raises(AuthError) as exc:
            await client.get_providers()
        return exc.value

    err, _ = run_against_server('wrong', body)
    assert err.status == 401


def test_non_json_body_is_decode_error():
    async def body(client):
        with pytest.raises(DecodeError):
            await client.get_proxies()

    run_against_server('', body)


def test_connection_refused_is_transport_error():
    async def scenario():
        server = test_utils.TestServer(web.Application())
        await server.start_server()
        port = server.port
        await server.close()
        client = ClashAPIClient(ServerConfig(host='127.0.0.1', port=port), request_timeout=2)
        try:
            with pytest.raises(TransportError):
                await client.get_proxies()
        finally:
            await client.close()

    asyncio.run(scenario())


def test_ssl_option_follows_verify_tls():
    assert ClashAPIClient(ServerConfig(host='r.lan', port=9090, use_ssl=True)).ssl_option is True
    assert ClashAPIClient(ServerConfig(host='r.lan', port=9090, use_ssl=True, verify_tls=False)).ssl_option is False
