"""
Module providing the client for the Clair v3 REST API.
"""

import logging

import httpx

from pydantic import ValidationError

from .exceptions import TransportError, MalformedInputError, ConflictError
from .models import ServiceStatus, AncestryResult, Notification


logger = logging.getLogger(__name__)


class ClairClient:
    """
    Client for the ancestry and notification services of Clair.

    A single client is shared by all concurrent workflows. The underlying
    connection pool bounds the number of requests in flight at once.
    """

    def __init__(self, url, *, headers = None,
                               auth = None,
                               timeout = 30.0,
                               max_connections = 10,
                               transport = None):
        self.url = url.rstrip('/')
        self.max_connections = max_connections
        self._client = httpx.AsyncClient(
            base_url = self.url,
            headers = headers,
            auth = auth,
            timeout = timeout,
            limits = httpx.Limits(
                max_connections = max_connections,
                max_keepalive_connections = max_connections
            ),
            transport = transport
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method, path, *, stage, ancestry = None, **kwargs):
        """
        Make a request, converting transport failures into gate errors.
        """
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(repr(exc), ancestry = ancestry, stage = stage) from exc

    def _raise_for_status(self, response, *, stage, ancestry = None):
        """
        Raise a suitable gate error if the response indicates a failure.
        """
        if response.is_success:
            return
        detail = self._error_detail(response)
        context = dict(ancestry = ancestry, stage = stage, status_code = response.status_code)
        if response.status_code in {400, 422}:
            raise MalformedInputError(detail, **context)
        elif response.status_code == 409:
            raise ConflictError(detail, **context)
        else:
            raise TransportError(detail, **context)

    def _error_detail(self, response):
        # The gateway returns errors as {"error": ..., "message": ...}
        try:
            content = response.json()
        except ValueError:
            content = None
        if isinstance(content, dict):
            message = content.get('message') or content.get('error')
            if message:
                return f'{response.status_code}: {message}'
        return f'{response.status_code}: {response.reason_phrase}'

    def _parse(self, model, content, *, stage, ancestry = None):
        try:
            return model.model_validate(content)
        except ValidationError as exc:
            raise TransportError(
                f'invalid {model.__name__} from service: {exc}',
                ancestry = ancestry,
                stage = stage
            ) from exc

    def _json(self, response, *, stage, ancestry = None):
        try:
            content = response.json()
        except ValueError as exc:
            raise TransportError(
                'service returned a non-JSON response',
                ancestry = ancestry,
                stage = stage
            ) from exc
        # An empty body is valid for some calls, anything else must be an object
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise TransportError(
                'service returned an unexpected response',
                ancestry = ancestry,
                stage = stage
            )
        return content

    async def post_ancestry(self, name, format, layers):
        """
        Submit the given ordered layers for scanning as the named ancestry.

        Returns the status of the service.
        """
        response = await self._request(
            'POST',
            '/ancestry',
            stage = 'submit',
            ancestry = name,
            json = dict(
                ancestry_name = name,
                format = format,
                layers = [layer.to_wire() for layer in layers]
            )
        )
        self._raise_for_status(response, stage = 'submit', ancestry = name)
        content = self._json(response, stage = 'submit', ancestry = name)
        return self._parse(
            ServiceStatus,
            content.get('status') or {},
            stage = 'submit',
            ancestry = name
        )

    async def get_ancestry(self, name, with_vulnerabilities = True, with_features = True):
        """
        Fetch the current scan result for the named ancestry.

        Returns ``None`` if the service does not know the ancestry (yet).
        """
        response = await self._request(
            'GET',
            f'/ancestry/{name}',
            stage = 'poll',
            ancestry = name,
            params = dict(
                with_vulnerabilities = with_vulnerabilities,
                with_features = with_features
            )
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, stage = 'poll', ancestry = name)
        content = self._json(response, stage = 'poll', ancestry = name)
        return self._parse(AncestryResult, content, stage = 'poll', ancestry = name)

    async def get_notification(self, name, old_page = '', new_page = '', limit = 100):
        """
        Fetch a page of the named notification.
        """
        response = await self._request(
            'GET',
            f'/notifications/{name}',
            stage = 'notification',
            params = dict(
                old_vulnerability_page = old_page,
                new_vulnerability_page = new_page,
                limit = limit
            )
        )
        if response.status_code == 404:
            raise MalformedInputError(
                f'notification {name} not found',
                stage = 'notification',
                notification = name
            )
        self._raise_for_status(response, stage = 'notification')
        content = self._json(response, stage = 'notification')
        return self._parse(
            Notification,
            content.get('notification') or {},
            stage = 'notification'
        )

    async def mark_notification_as_read(self, name):
        """
        Mark the named notification as processed.

        Marking a notification that has already been marked is not an error.
        """
        response = await self._request('DELETE', f'/notifications/{name}', stage = 'notification')
        if response.status_code == 404:
            logger.info(f'Notification already marked as read: {name}')
            return
        self._raise_for_status(response, stage = 'notification')
