"""
Module containing the submitter that sends ancestries to the scanning service.
"""

import logging
from collections.abc import Mapping

from pydantic import ValidationError

from .exceptions import ConflictError, GateError, MalformedInputError
from .models import Layer
from .util import in_stage


logger = logging.getLogger(__name__)


#: The default image format
DEFAULT_FORMAT = "Docker"


def normalise_layers(layers):
    """
    Returns the given layers as a list of :py:class:`Layer`, preserving the order.

    Layers can be given as models or mappings of ``hash``, ``location`` and ``headers``.
    """
    normalised = []
    for position, layer in enumerate(layers or []):
        if isinstance(layer, Layer):
            layer = layer.model_dump()
        if not isinstance(layer, Mapping):
            raise MalformedInputError(f'layer {position} is not a layer descriptor')
        try:
            normalised.append(Layer.model_validate(layer))
        except ValidationError as exc:
            fields = ', '.join(
                '.'.join(str(part) for part in error['loc'])
                for error in exc.errors()
            )
            raise MalformedInputError(f'layer {position} has invalid fields: {fields}') from exc
    if not normalised:
        raise MalformedInputError('at least one layer is required')
    return normalised


class ScanSubmitter:
    """
    Submits ancestries for scanning.

    Submission is idempotent at the service: submitting the same name with the same
    layers again is a no-op, while submitting the same name with different layers is
    a conflict. The submitter holds no state between submissions.
    """
    def __init__(self, client):
        self.client = client

    @in_stage('submit')
    async def submit(self, name, layers, format = DEFAULT_FORMAT):
        """
        Submit the given ordered layers as the named ancestry and return the
        status of the service.
        """
        if not isinstance(name, str) or not name.strip():
            raise MalformedInputError('ancestry name must be a non-empty string')
        if not format:
            raise MalformedInputError('image format must be given')
        layers = normalise_layers(layers)
        logger.info(f'Submitting ancestry {name} with {len(layers)} layer(s)')
        try:
            return await self.client.post_ancestry(name, format, layers)
        except ConflictError as exc:
            # Include both layer lists so the conflict can be diagnosed
            raise ConflictError(
                exc.detail,
                ancestry = name,
                stage = 'submit',
                submitted_layers = [layer.hash for layer in layers],
                existing_layers = await self._existing_layers(name)
            ) from exc

    async def _existing_layers(self, name):
        # The conflict is raised whether or not the existing layers can be fetched
        try:
            result = await self.client.get_ancestry(
                name,
                with_vulnerabilities = False,
                with_features = False
            )
        except GateError as exc:
            logger.warning(f'Could not fetch existing layers for {name}: {exc}')
            return None
        if result is None:
            return None
        return [layer.hash for layer in result.ancestry.layers]
