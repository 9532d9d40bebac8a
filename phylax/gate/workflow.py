"""
Module containing the gate workflow: resolve, submit, poll, aggregate and evaluate.
"""

import asyncio
import logging
import time
from collections import namedtuple
from typing import List, Optional

import httpx

from pydantic import BaseModel, ConfigDict

from . import completeness
from .aggregator import AggregatedVulnerability, Diagnostic, VulnerabilityAggregator
from .clair import ClairClient
from .conf import load_settings
from .exceptions import GateError
from .models import ServiceStatus
from .notifications import NotificationConsumer
from .poller import ScanPoller
from .policy import Mode, Policy, PolicyEvaluator
from .registry import DEFAULT_REGISTRY, RegistryLayerResolver, parse_reference
from .severity import SeverityScale
from .submitter import ScanSubmitter
from .util import in_stage
from .whitelist import Whitelist, WhitelistFile


logger = logging.getLogger(__name__)


#: Exit code for an image that passes the gate
EXIT_PASS = 0
#: Exit code for an image that fails the gate
EXIT_FAIL = 1
#: Exit code for a failure of the scanning infrastructure or configuration
EXIT_ERROR = 2


class Report(BaseModel):
    """
    Model for the report produced alongside a decision.
    """
    model_config = ConfigDict(arbitrary_types_allowed = True)

    #: The image as given for evaluation
    image: str
    #: The ancestry name used for the scan
    ancestry: str
    #: The hashes of the scanned layers, in order
    layers: List[str]
    #: The status of the service when the scan completed
    status: Optional[ServiceStatus] = None
    #: All the vulnerabilities found, most severe first
    vulnerabilities: List[AggregatedVulnerability]
    #: Diagnostics raised during aggregation
    diagnostics: List[Diagnostic]


class Outcome(namedtuple('Outcome', ['image', 'evaluation', 'report', 'error'])):
    """
    Class representing the outcome of evaluating one of several images.

    Exactly one of ``evaluation`` and ``error`` is set.
    """
    @property
    def exit_code(self):
        return exit_code(self.error or self.evaluation)


def exit_code(outcome):
    """
    Returns the process exit code for an evaluation or an error.
    """
    if isinstance(outcome, Outcome):
        return outcome.exit_code
    if isinstance(outcome, BaseException):
        return EXIT_ERROR
    return EXIT_PASS if outcome.passed else EXIT_FAIL


def policy_from_settings(settings):
    """
    Build a policy from the policy settings, loading the whitelist file if given.
    """
    whitelist = Whitelist(settings.whitelist)
    if settings.whitelist_file:
        whitelist_file = WhitelistFile.from_file(settings.whitelist_file)
        whitelist_file.general = whitelist_file.general.union(whitelist)
        whitelist = whitelist_file
    return Policy(
        threshold = settings.threshold,
        whitelist = whitelist,
        max_allowed = settings.max_allowed
    )


class Gate:
    """
    Gates images on the vulnerabilities found by the scanning service.

    One gate can evaluate many images concurrently. All workflows share the same
    client and therefore the same bounded connection pool.
    """
    def __init__(self, client, resolver = None, *, scale = None,
                                                 backoff = None,
                                                 poll_deadline = 600.0,
                                                 is_terminal = completeness.scanners_stable,
                                                 clock = time.monotonic,
                                                 sleep = asyncio.sleep,
                                                 page_size = 100,
                                                 default_registry = DEFAULT_REGISTRY,
                                                 max_concurrency = None,
                                                 policy = None):
        self.client = client
        #: The policy used when none is given
        self.policy = policy or Policy()
        self.default_registry = default_registry
        self.resolver = resolver or RegistryLayerResolver(default_registry = default_registry)
        self.scale = scale or SeverityScale()
        self.page_size = page_size
        self.submitter = ScanSubmitter(client)
        self.poller = ScanPoller(
            client,
            backoff = backoff,
            deadline = poll_deadline,
            is_terminal = is_terminal,
            clock = clock,
            sleep = sleep
        )
        self.aggregator = VulnerabilityAggregator(self.scale)
        self.evaluator = PolicyEvaluator(self.scale)
        self.max_concurrency = max_concurrency or getattr(client, 'max_connections', 10)

    @classmethod
    def from_settings(cls, settings = None, **kwargs):
        """
        Build a gate from the given settings, or the settings for the process.
        """
        settings = settings or load_settings()
        if settings.clair_username:
            auth = httpx.BasicAuth(settings.clair_username, settings.clair_password or '')
        else:
            auth = None
        client = ClairClient(
            settings.clair_url,
            headers = settings.clair_headers,
            auth = auth,
            timeout = settings.request_timeout,
            max_connections = settings.max_connections
        )
        resolver = RegistryLayerResolver(
            default_registry = settings.default_registry,
            username = settings.registry_username,
            password = settings.registry_password,
            timeout = settings.request_timeout
        )
        kwargs.setdefault('scale', settings.severity_scale)
        kwargs.setdefault('backoff', settings.backoff)
        kwargs.setdefault('poll_deadline', settings.poll_deadline)
        kwargs.setdefault('is_terminal', completeness.resolve(settings.completeness))
        kwargs.setdefault('page_size', settings.notification_page_size)
        kwargs.setdefault('default_registry', settings.default_registry)
        kwargs.setdefault('policy', policy_from_settings(settings.policy))
        return cls(client, resolver, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.client.aclose()

    @in_stage('evaluate', ancestry_arg = None)
    async def evaluate(self, image, policy = None):
        """
        Evaluate the given image against the policy and return ``(evaluation, report)``.
        """
        policy = policy or self.policy
        # Configuration and input errors are raised before any network activity
        repository = parse_reference(image, self.default_registry).repository
        self.evaluator.check(policy, repository)
        resolved = await self.resolver.resolve(image)
        name = resolved.ancestry_name
        await self.submitter.submit(name, resolved.layers, resolved.format)
        result = await self.poller.poll(name)
        vulnerabilities = self.aggregator.aggregate(result.ancestry.features)
        evaluation = self.evaluator.evaluate(vulnerabilities, policy, repository = repository)
        logger.info(f'Image {image} ({name}): {evaluation.decision.value}')
        report = Report(
            image = image,
            ancestry = name,
            layers = [layer.hash for layer in resolved.layers],
            status = result.status,
            vulnerabilities = list(vulnerabilities.values()),
            diagnostics = vulnerabilities.diagnostics
        )
        return evaluation, report

    async def evaluate_all(self, images, policy = None):
        """
        Evaluate several images concurrently, returning an :py:class:`Outcome` for each.

        Errors for one image do not affect the others.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        async def run(image):
            async with semaphore:
                try:
                    evaluation, report = await self.evaluate(image, policy)
                except GateError as exc:
                    logger.exception(f'Error evaluating image: {image}')
                    return Outcome(image, None, None, exc)
                return Outcome(image, evaluation, report, None)
        return await asyncio.gather(*(run(image) for image in images))

    @in_stage('notification', ancestry_arg = None)
    async def evaluate_notification(self, name, ancestry = None, policy = None, mark = True):
        """
        Evaluate the vulnerabilities that a notification newly introduces.

        If ``ancestry`` is given, only the sides of the notification that list the
        ancestry are considered. Once drained and evaluated, the notification is
        marked as processed unless ``mark`` is false.

        Returns ``(evaluation, delta)``.
        """
        policy = (policy or self.policy).model_copy(update = dict(mode = Mode.NOTIFICATION_DELTA))
        whitelist = policy.whitelist
        if isinstance(whitelist, WhitelistFile):
            # Notifications are not tied to one image, so only the general entries apply
            policy = policy.model_copy(update = dict(whitelist = whitelist.general))
        self.evaluator.check(policy)
        consumer = NotificationConsumer(
            self.client,
            name,
            page_size = self.page_size,
            scale = self.scale
        )
        delta = await consumer.drain()
        if ancestry:
            delta = delta.for_ancestry(ancestry)
        evaluation = self.evaluator.evaluate(delta.new, policy, baseline = delta.old)
        if mark:
            await consumer.mark_processed()
        return evaluation, delta
