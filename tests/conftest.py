"""
Pytest fixtures for the gate tests.

Provides an in-memory fake of the Clair v3 REST API that is served to the client
through an httpx mock transport, and a fake clock for the poller.
"""

import json

import httpx
import pytest

from phylax.gate.clair import ClairClient


CLAIR_URL = 'http://clair.test'


def vuln(name, namespace_name = 'debian:8', severity = 'High', **kwargs):
    """Vulnerability in the wire format."""
    return dict(name = name, namespace_name = namespace_name, severity = severity, **kwargs)


def feature(name, namespace_name = 'debian:8', version = '1.0.0', *vulnerabilities):
    """Feature in the wire format."""
    return dict(
        name = name,
        namespace_name = namespace_name,
        version = version,
        version_format = 'dpkg',
        vulnerabilities = list(vulnerabilities)
    )


def layers(*hashes):
    """Layer descriptors for the given hashes."""
    return [
        dict(hash = h, location = f'https://registry.test/v2/app/blobs/{h}', headers = {})
        for h in hashes
    ]


class FakeClair:
    """
    In-memory fake of the ancestry and notification services.

    Polls for an ancestry can be scripted with a list of steps, each of which is
    a dict of ``listers``, ``detectors`` and ``features``, an HTTP status code or an
    exception class to raise. The last step repeats forever.
    """
    def __init__(self):
        self.status = dict(
            listers = ['dpkg', 'rpm'],
            detectors = ['os-release'],
            last_update_time = '1500000000'
        )
        #: Map of ancestry name to the submitted layer hashes
        self.submitted = {}
        #: Map of ancestry name to features returned once scanned
        self.features = {}
        self.scripts = {}
        self.notifications = {}
        self.marked = []
        self.requests = []

    def script(self, name, steps):
        self.scripts[name] = list(steps)

    def notification(self, name, old = None, new = None, old_ancestries = (), new_ancestries = ()):
        self.notifications[name] = dict(
            old = old,
            new = new,
            old_ancestries = list(old_ancestries),
            new_ancestries = list(new_ancestries)
        )

    def requests_for(self, method, path = None):
        return [
            r for r in self.requests
            if r.method == method and (path is None or r.url.path == path)
        ]

    def _ancestry(self, name, listers, detectors, features):
        return dict(
            ancestry = dict(
                name = name,
                format = 'Docker',
                features = features,
                layers = [dict(hash = h) for h in self.submitted.get(name, [])],
                scanned_listers = listers,
                scanned_detectors = detectors
            ),
            status = self.status
        )

    def _post_ancestry(self, request):
        body = json.loads(request.content)
        name = body['ancestry_name']
        hashes = [layer['hash'] for layer in body['layers']]
        if name in self.submitted and self.submitted[name] != hashes:
            return httpx.Response(409, json = dict(error = 'conflict', message = 'layers differ'))
        self.submitted[name] = hashes
        return httpx.Response(200, json = dict(status = self.status))

    def _get_ancestry(self, request, name):
        steps = self.scripts.get(name)
        if steps:
            step = steps.pop(0) if len(steps) > 1 else steps[0]
            if isinstance(step, type) and issubclass(step, Exception):
                raise step('scripted failure', request = request)
            if isinstance(step, int):
                return httpx.Response(step, json = dict(message = 'scripted'))
            return httpx.Response(
                200,
                json = self._ancestry(
                    name,
                    step.get('listers', []),
                    step.get('detectors', []),
                    step.get('features', self.features.get(name, []))
                )
            )
        if name not in self.submitted:
            return httpx.Response(404, json = dict(message = 'ancestry not found'))
        return httpx.Response(
            200,
            json = self._ancestry(name, ['dpkg'], ['os-release'], self.features.get(name, []))
        )

    def _page(self, vulnerability, ancestries, cursor, limit):
        if vulnerability is None:
            return None
        offset = int(cursor) if cursor else 0
        end = offset + limit
        return dict(
            current_page = cursor,
            next_page = str(end) if end < len(ancestries) else '',
            limit = limit,
            vulnerability = vulnerability,
            ancestries = [
                dict(index = index, name = name)
                for index, name in enumerate(ancestries[offset:end], start = offset + 1)
            ]
        )

    def _get_notification(self, request, name):
        if name not in self.notifications:
            return httpx.Response(404, json = dict(message = 'notification not found'))
        notification = self.notifications[name]
        params = request.url.params
        limit = int(params.get('limit', 100))
        return httpx.Response(
            200,
            json = dict(
                notification = dict(
                    name = name,
                    created = '1500000000',
                    notified = '',
                    deleted = '',
                    old = self._page(
                        notification['old'],
                        notification['old_ancestries'],
                        params.get('old_vulnerability_page', ''),
                        limit
                    ),
                    new = self._page(
                        notification['new'],
                        notification['new_ancestries'],
                        params.get('new_vulnerability_page', ''),
                        limit
                    )
                )
            )
        )

    def _delete_notification(self, request, name):
        if name not in self.notifications:
            return httpx.Response(404, json = dict(message = 'notification not found'))
        self.marked.append(name)
        return httpx.Response(200, json = {})

    def handler(self, request):
        self.requests.append(request)
        path = request.url.path
        if request.method == 'POST' and path == '/ancestry':
            return self._post_ancestry(request)
        if request.method == 'GET' and path.startswith('/ancestry/'):
            return self._get_ancestry(request, path[len('/ancestry/'):])
        if request.method == 'GET' and path.startswith('/notifications/'):
            return self._get_notification(request, path[len('/notifications/'):])
        if request.method == 'DELETE' and path.startswith('/notifications/'):
            return self._delete_notification(request, path[len('/notifications/'):])
        return httpx.Response(404, json = dict(message = 'no route'))


class FakeClock:
    """
    Clock that only moves when the fake sleep is awaited.
    """
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, interval):
        self.sleeps.append(interval)
        self.now += interval


@pytest.fixture
def clair():
    """In-memory fake Clair."""
    return FakeClair()


@pytest.fixture
def client(clair):
    """Clair client wired to the fake Clair."""
    return ClairClient(CLAIR_URL, transport = httpx.MockTransport(clair.handler))


@pytest.fixture
def clock():
    """Fake clock and sleep for the poller."""
    return FakeClock()


def client_for(handler):
    """Clair client for a one-off request handler."""
    return ClairClient(CLAIR_URL, transport = httpx.MockTransport(handler))
