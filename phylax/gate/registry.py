"""
Utilities for resolving images in Docker registries into the layers to scan.
"""

import abc
import logging
import re
from collections import namedtuple

import httpx

from pydantic import ValidationError

from .exceptions import MalformedInputError, TransportError
from .models import Layer


logger = logging.getLogger(__name__)


class ImageReference(namedtuple('ImageReference', [
    'registry',
    'repository',
    'tag',
    'digest'
])):
    """
    Class representing a parsed image reference.

    Attributes:
      registry: The registry for the image.
      repository: The repository for the image.
      tag: The tag for the image. Can be ``None`` if the image is given by digest.
      digest: The digest for the image. Can be ``None`` if the image is given by tag.
    """
    @property
    def reference(self):
        return self.digest or self.tag

    @property
    def full_tag(self):
        tag = self.tag or 'unknown'
        return f'{self.registry}/{self.repository}:{tag}'

    def manifest_uri(self, reference = None):
        return f'https://{self.registry}/v2/{self.repository}/manifests/{reference or self.reference}'

    def layer_uri(self, digest):
        return f'https://{self.registry}/v2/{self.repository}/blobs/{digest}'


class ResolvedImage(namedtuple('ResolvedImage', [
    'reference',
    'digest',
    'format',
    'layers'
])):
    """
    Class representing an image resolved into its ordered layers.

    Attributes:
      reference: The :py:class:`ImageReference` that was resolved.
      digest: The digest of the image manifest.
      format: The image format, as understood by the scanning service.
      layers: The ordered list of :py:class:`Layer`, base layer first.
    """
    @property
    def ancestry_name(self):
        # The manifest digest identifies the layer stack
        return self.digest


#: Regex used to parse the parameters of the www-authenticate header
WWW_AUTHENTICATE_PARAM_REGEX = re.compile(r'(?P<key>\w+)="(?P<value>[^"]*)"')

#: The default registry, used when no other registry is specified
DEFAULT_REGISTRY = "registry-1.docker.io"

#: The manifest media types that we can process
MANIFEST_TYPES = (
    'application/vnd.docker.distribution.manifest.v2+json',
    'application/vnd.oci.image.manifest.v1+json',
)

#: The manifest list media types that we can process
MANIFEST_LIST_TYPES = (
    'application/vnd.docker.distribution.manifest.list.v2+json',
    'application/vnd.oci.image.index.v1+json',
)


def parse_reference(image, default_registry = DEFAULT_REGISTRY):
    """
    Return an :py:class:`ImageReference` for the given image string.

    The image should be of the form ``[registry '/']repository['@' digest | ':' tag]``.
    """
    if not isinstance(image, str) or not image.strip() or any(c.isspace() for c in image):
        raise MalformedInputError(f'invalid image reference {image!r}', stage = 'resolve')
    # First, determine if we have a registry component
    # For our purposes, the first component is a registry if it contains a dot
    # (DNS name or IP address), a colon (port) or is the string "localhost"
    name, registry, *notused = image.split('/', 1)[::-1] + [None]
    if not registry:
        name = f'library/{name}'
        registry = default_registry
    elif all(c not in registry for c in {'.', ':'}) and registry != "localhost":
        name = f'{registry}/{name}'
        registry = default_registry
    # docker.io isn't a real registry, so use the default registry instead
    if registry == "docker.io":
        registry = DEFAULT_REGISTRY
        if '/' not in name:
            name = f'library/{name}'
    # Next, split the name into repository and reference
    tag = digest = None
    if '@' in name:
        repository, digest = name.split('@', 1)
    elif ':' in name:
        repository, tag = name.rsplit(':', 1)
    else:
        repository, tag = name, 'latest'
    if not repository or not (tag or digest):
        raise MalformedInputError(f'invalid image reference {image!r}', stage = 'resolve')
    return ImageReference(registry, repository, tag, digest)


class LayerResolver(abc.ABC):
    """
    Base class for layer resolvers.
    """
    @abc.abstractmethod
    async def resolve(self, image) -> ResolvedImage:
        """
        Resolve the given image reference into its ordered layers.
        """


class RegistryLayerResolver(LayerResolver):
    """
    Layer resolver that reads image manifests from a Docker Registry v2 API.

    If the registry requires a bearer token, the token is forwarded to the scanning
    service in the headers of each layer so that it can fetch the layer blobs.
    """
    def __init__(self, *, default_registry = DEFAULT_REGISTRY,
                          username = None,
                          password = None,
                          timeout = 30.0,
                          transport = None):
        self.default_registry = default_registry
        self.credentials = (username, password) if username else None
        self.timeout = timeout
        self.transport = transport

    async def _get(self, client, url, **kwargs):
        try:
            return await client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(repr(exc), stage = 'resolve') from exc

    def _json(self, response, what):
        try:
            content = response.json()
        except ValueError as exc:
            raise TransportError(
                f'registry returned a non-JSON response for {what}',
                stage = 'resolve',
                status_code = response.status_code
            ) from exc
        if not isinstance(content, dict):
            raise TransportError(
                f'registry returned an unexpected response for {what}',
                stage = 'resolve',
                status_code = response.status_code
            )
        return content

    async def _authorize(self, client, response):
        """
        Fetch a bearer token using the challenge in the given 401 response.
        """
        challenge = response.headers.get('www-authenticate', '')
        if not challenge.lower().startswith('bearer'):
            return None
        params = {
            match.group('key'): match.group('value')
            for match in WWW_AUTHENTICATE_PARAM_REGEX.finditer(challenge)
        }
        realm = params.pop('realm', None)
        if not realm:
            return None
        response = await self._get(client, realm, params = params, auth = self.credentials)
        if not response.is_success:
            return None
        content = self._json(response, f'token from {realm}')
        token = content.get('token') or content.get('access_token')
        return f'Bearer {token}' if token else None

    async def _get_manifest(self, client, url, original_image):
        accept = {
            # Make sure to ask for the V2 schemas
            'Accept': ','.join(MANIFEST_TYPES + MANIFEST_LIST_TYPES)
        }
        response = await self._get(client, url, headers = accept)
        # Some registries allow unauthenticated requests for public manifests, and some require a token
        # If the response is a 401, use the challenge to get a token and try again
        if response.status_code == 401 and 'Authorization' not in client.headers:
            authorization = await self._authorize(client, response)
            if authorization:
                # Make sure that future requests use the token
                client.headers['Authorization'] = authorization
                response = await self._get(client, url, headers = accept)
        # When a repository isn't accessible, the response is a 401 (could exist but be private)
        if response.status_code in {401, 404}:
            raise MalformedInputError(f'image not found: {original_image}', stage = 'resolve')
        if not response.is_success:
            raise TransportError(
                f'registry returned {response.status_code} for {original_image}',
                stage = 'resolve',
                status_code = response.status_code
            )
        return response

    async def resolve(self, image):
        reference = parse_reference(image, self.default_registry)
        async with httpx.AsyncClient(timeout = self.timeout, transport = self.transport) as client:
            response = await self._get_manifest(client, reference.manifest_uri(), image)
            # If a manifest list was returned, fetch the manifest for the linux/amd64 variant
            content_type = response.headers.get('content-type', '').split(';')[0]
            if content_type in MANIFEST_LIST_TYPES:
                manifests = self._json(response, image).get('manifests')
                try:
                    digest = next(
                        m['digest']
                        for m in manifests
                        if m['platform']['architecture'] == 'amd64' and m['platform']['os'] == 'linux'
                    )
                except (StopIteration, KeyError, TypeError):
                    raise MalformedInputError(f'no linux/amd64 image for {image}', stage = 'resolve')
                response = await self._get_manifest(client, reference.manifest_uri(digest), image)
            authorization = client.headers.get('Authorization')
        manifest = self._json(response, image)
        # The digest is in a response header
        digest = response.headers.get('docker-content-digest') or reference.digest
        if not digest:
            raise MalformedInputError(f'registry did not report a digest for {image}', stage = 'resolve')
        headers = {'Authorization': authorization} if authorization else {}
        try:
            layers = [
                Layer(hash = layer['digest'], location = reference.layer_uri(layer['digest']), headers = headers)
                for layer in manifest['layers']
            ]
        except (KeyError, TypeError):
            raise MalformedInputError(f'manifest for {image} has no layers', stage = 'resolve')
        except ValidationError as exc:
            raise MalformedInputError(f'manifest for {image} has an invalid layer', stage = 'resolve') from exc
        logger.info(f'Resolved {image} to {digest} with {len(layers)} layer(s)')
        return ResolvedImage(reference, digest, 'Docker', layers)
