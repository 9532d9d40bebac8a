"""Tests for the Clair v3 REST client."""

import json

import httpx
import pytest

from phylax.gate.exceptions import ConflictError, MalformedInputError, TransportError
from phylax.gate.models import Layer

from conftest import client_for, feature, vuln


LAYERS = [
    Layer(hash = 'l1', location = 'https://r/l1'),
    Layer(hash = 'l2', location = 'https://r/l2', headers = {'Authorization': 'Bearer x'}),
]


class TestAncestry:
    """Tests for the ancestry calls."""

    @pytest.mark.asyncio
    async def test_post_ancestry(self, clair, client):
        status = await client.post_ancestry('sha256:abc', 'Docker', LAYERS)
        assert status.listers == ['dpkg', 'rpm']
        request, = clair.requests_for('POST', '/ancestry')
        assert json.loads(request.content) == dict(
            ancestry_name = 'sha256:abc',
            format = 'Docker',
            layers = [
                dict(hash = 'l1', path = 'https://r/l1', headers = {}),
                dict(hash = 'l2', path = 'https://r/l2', headers = {'Authorization': 'Bearer x'}),
            ]
        )

    @pytest.mark.asyncio
    async def test_post_ancestry_conflict(self, clair, client):
        await client.post_ancestry('sha256:abc', 'Docker', LAYERS)
        with pytest.raises(ConflictError) as exc_info:
            await client.post_ancestry('sha256:abc', 'Docker', LAYERS[:1])
        assert exc_info.value.status_code == 409
        assert exc_info.value.stage == 'submit'
        assert 'layers differ' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_get_unknown_ancestry(self, client):
        assert await client.get_ancestry('sha256:unknown') is None

    @pytest.mark.asyncio
    async def test_get_ancestry(self, clair, client):
        clair.features['sha256:abc'] = [
            feature('openssl', 'debian:8', '1.0.1', vuln('CVE-2016-0001'))
        ]
        await client.post_ancestry('sha256:abc', 'Docker', LAYERS)
        result = await client.get_ancestry('sha256:abc')
        assert result.ancestry.name == 'sha256:abc'
        assert result.ancestry.scanned_listers == ['dpkg']
        assert result.ancestry.features[0].vulnerabilities[0].name == 'CVE-2016-0001'
        request = clair.requests_for('GET', '/ancestry/sha256:abc')[-1]
        assert request.url.params['with_vulnerabilities'] == 'true'
        assert request.url.params['with_features'] == 'true'


class TestErrors:
    """Tests for the mapping of failures to gate errors."""

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = client_for(lambda request: httpx.Response(500, json = dict(message = 'database down')))
        with pytest.raises(TransportError) as exc_info:
            await client.get_ancestry('sha256:abc')
        assert exc_info.value.status_code == 500
        assert exc_info.value.ancestry == 'sha256:abc'
        assert exc_info.value.stage == 'poll'
        assert 'database down' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bad_request(self):
        client = client_for(lambda request: httpx.Response(400, json = dict(error = 'bad layer')))
        with pytest.raises(MalformedInputError) as exc_info:
            await client.post_ancestry('sha256:abc', 'Docker', LAYERS)
        assert 'bad layer' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request = request)
        client = client_for(handler)
        with pytest.raises(TransportError) as exc_info:
            await client.get_ancestry('sha256:abc')
        assert exc_info.value.stage == 'poll'
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        client = client_for(lambda request: httpx.Response(200, text = '<html></html>'))
        with pytest.raises(TransportError):
            await client.get_ancestry('sha256:abc')

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        client = client_for(lambda request: httpx.Response(200, json = ['not', 'an', 'object']))
        with pytest.raises(TransportError):
            await client.get_ancestry('sha256:abc')

    @pytest.mark.asyncio
    async def test_invalid_record(self):
        # The ancestry is required in a response
        client = client_for(lambda request: httpx.Response(200, json = dict(status = {})))
        with pytest.raises(TransportError) as exc_info:
            await client.get_ancestry('sha256:abc')
        assert 'AncestryResult' in str(exc_info.value)


class TestNotifications:
    """Tests for the notification calls."""

    @pytest.mark.asyncio
    async def test_get_notification(self, clair, client):
        clair.notification(
            'n1',
            new = vuln('CVE-2016-0001'),
            new_ancestries = ['a1', 'a2', 'a3']
        )
        notification = await client.get_notification('n1', limit = 2)
        assert notification.name == 'n1'
        assert notification.old is None
        assert [a.name for a in notification.new.ancestries] == ['a1', 'a2']
        assert notification.new.next_page == '2'
        request, = clair.requests_for('GET', '/notifications/n1')
        assert request.url.params['limit'] == '2'
        assert request.url.params['old_vulnerability_page'] == ''

    @pytest.mark.asyncio
    async def test_get_unknown_notification(self, client):
        with pytest.raises(MalformedInputError) as exc_info:
            await client.get_notification('unknown')
        assert exc_info.value.notification == 'unknown'

    @pytest.mark.asyncio
    async def test_mark_notification(self, clair, client):
        clair.notification('n1', new = vuln('CVE-2016-0001'))
        await client.mark_notification_as_read('n1')
        assert clair.marked == ['n1']

    @pytest.mark.asyncio
    async def test_mark_unknown_notification_is_not_an_error(self, clair, client):
        await client.mark_notification_as_read('unknown')
        assert clair.marked == []
