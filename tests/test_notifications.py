"""Tests for the notification consumer."""

import pytest

from phylax.gate.exceptions import MalformedInputError, NotificationPendingError, PartialResultError
from phylax.gate.notifications import NotificationConsumer

from conftest import vuln


ANCESTRIES = ['a1', 'a2', 'a3', 'a4', 'a5']


@pytest.fixture
def notification(clair):
    """A notification where CVE-2016-0001 went from Medium to High."""
    clair.notification(
        'n1',
        old = vuln('CVE-2016-0001', severity = 'Medium'),
        new = vuln(
            'CVE-2016-0001',
            severity = 'High',
            affected_versions = [dict(name = 'openssl', namespace_name = 'debian:8', version = '1.0.1')]
        ),
        old_ancestries = ['a1'],
        new_ancestries = ANCESTRIES
    )
    return 'n1'


class TestNotificationConsumer:
    """Tests for NotificationConsumer."""

    @pytest.mark.asyncio
    async def test_pages_follow_the_cursor(self, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        sizes = [len(page.ancestries) async for page in consumer.new_pages()]
        assert sizes == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_ancestries_in_order(self, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        names = [a.name async for a in consumer.new_ancestries()]
        assert names == ANCESTRIES
        assert [a.name async for a in consumer.old_ancestries()] == ['a1']

    @pytest.mark.asyncio
    async def test_other_side_cursor_is_untouched(self, clair, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        async for _ in consumer.new_pages():
            pass
        params = [request.url.params for request in clair.requests_for('GET')]
        assert [p['new_vulnerability_page'] for p in params] == ['', '2', '4']
        assert all(p['old_vulnerability_page'] == '' for p in params)

    @pytest.mark.asyncio
    async def test_cursor_only_advances_when_resumed(self, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        pages = consumer.new_pages()
        first = await pages.__anext__()
        assert first.next_page == '2'
        assert consumer.cursors['new'] == ''
        await pages.__anext__()
        assert consumer.cursors['new'] == '2'
        await pages.aclose()

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2, new_page = '2')
        names = [a.name async for a in consumer.new_ancestries()]
        assert names == ['a3', 'a4', 'a5']

    @pytest.mark.asyncio
    async def test_drain(self, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        delta = await consumer.drain()
        assert consumer.drained
        assert [a.name for a in delta.new_ancestries] == ANCESTRIES
        assert [a.name for a in delta.old_ancestries] == ['a1']
        assert delta.old[('debian:8', 'CVE-2016-0001')].severity == 'Medium'
        new = delta.new[('debian:8', 'CVE-2016-0001')]
        assert new.severity == 'High'
        assert [str(f) for f in new.affected_features] == ['openssl/debian:8/1.0.1']

    @pytest.mark.asyncio
    async def test_delta_for_ancestry(self, client, notification):
        delta = await NotificationConsumer(client, notification).drain()
        # a1 is on both sides
        a1 = delta.for_ancestry('a1')
        assert len(a1.old) == 1 and len(a1.new) == 1
        # a2 only has the new vulnerability
        a2 = delta.for_ancestry('a2')
        assert len(a2.old) == 0 and len(a2.new) == 1
        assert [a.name for a in a2.new_ancestries] == ['a2']

    @pytest.mark.asyncio
    async def test_missing_side(self, clair, client):
        clair.notification('n2', new = vuln('CVE-1'), new_ancestries = ['a1'])
        consumer = NotificationConsumer(client, 'n2')
        delta = await consumer.drain()
        assert len(delta.old) == 0
        assert delta.old_ancestries == ()
        assert consumer.drained

    @pytest.mark.asyncio
    async def test_unknown_notification(self, client):
        with pytest.raises(MalformedInputError) as exc_info:
            await NotificationConsumer(client, 'unknown').drain()
        assert exc_info.value.stage == 'notification'

    @pytest.mark.asyncio
    async def test_cursor_that_does_not_advance(self, client, notification, monkeypatch):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        fetch = consumer._fetch
        async def stuck_fetch(side, cursor):
            page = await fetch(side, '')
            return page.model_copy(update = dict(next_page = cursor or page.next_page))
        monkeypatch.setattr(consumer, '_fetch', stuck_fetch)
        with pytest.raises(PartialResultError) as exc_info:
            async for _ in consumer.new_pages():
                pass
        assert exc_info.value.cursor == '2'


class TestMarkProcessed:
    """Tests for marking notifications as processed."""

    @pytest.mark.asyncio
    async def test_mark_after_drain(self, clair, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        await consumer.drain()
        await consumer.mark_processed()
        assert clair.marked == ['n1']

    @pytest.mark.asyncio
    async def test_mark_twice_is_a_no_op(self, clair, client, notification):
        consumer = NotificationConsumer(client, notification)
        await consumer.drain()
        await consumer.mark_processed()
        await consumer.mark_processed()
        assert clair.marked == ['n1']

    @pytest.mark.asyncio
    async def test_mark_before_drain(self, clair, client, notification):
        consumer = NotificationConsumer(client, notification, page_size = 2)
        async for _ in consumer.new_pages():
            break
        with pytest.raises(NotificationPendingError) as exc_info:
            await consumer.mark_processed()
        assert exc_info.value.stage == 'notification'
        assert exc_info.value.cursors == dict(old = '', new = '')
        assert clair.marked == []
        assert len(clair.requests_for('DELETE')) == 0
