"""
Module containing the policy that decides whether an image passes the gate.
"""

import enum
import logging
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

from .aggregator import AggregatedVulnerability, VulnerabilitySet
from .severity import SeverityScale
from .whitelist import Whitelist, WhitelistFile


logger = logging.getLogger(__name__)


class Mode(str, enum.Enum):
    """
    Enumeration of the evaluation modes.
    """
    #: Every vulnerability in the set participates
    FULL = 'full'
    #: Only vulnerabilities that are new in a notification participate
    NOTIFICATION_DELTA = 'notification-delta'


class Decision(str, enum.Enum):
    """
    Enumeration of the possible decisions.
    """
    PASS = 'PASS'
    FAIL = 'FAIL'


class Policy(BaseModel):
    """
    Model for a severity policy.
    """
    model_config = ConfigDict(arbitrary_types_allowed = True)

    #: The lowest severity that causes a failure
    threshold: str = 'Unknown'
    #: Whitelist patterns, a :py:class:`Whitelist` or a :py:class:`WhitelistFile`
    whitelist: Any = Field(default_factory = list)
    #: The evaluation mode
    mode: Mode = Mode.FULL
    #: The number of vulnerabilities at or above the threshold that are tolerated
    max_allowed: NonNegativeInt = 0


class Evaluation(BaseModel):
    """
    Model for the outcome of evaluating a policy.
    """
    decision: Decision
    #: The vulnerabilities that counted against the threshold, most severe first
    contributing: List[AggregatedVulnerability] = Field(default_factory = list)
    #: The number of vulnerabilities removed by the whitelist
    whitelisted_count: int = 0
    #: The threshold that was applied
    threshold: str
    #: The number of participating vulnerabilities at each severity
    counts: Dict[str, int] = Field(default_factory = dict)

    @property
    def passed(self):
        return self.decision is Decision.PASS


class PolicyEvaluator:
    """
    Applies a policy to a set of aggregated vulnerabilities.
    """
    def __init__(self, scale = None):
        self.scale = scale or SeverityScale()

    def check(self, policy, repository = None):
        """
        Validate the policy, returning the canonical threshold and the whitelist to use.

        This must be called before any network activity so that configuration errors
        are reported immediately.
        """
        threshold = self.scale.canonical(policy.threshold)
        whitelist = policy.whitelist
        if isinstance(whitelist, WhitelistFile):
            whitelist = whitelist.for_image(repository)
        elif not isinstance(whitelist, Whitelist):
            whitelist = Whitelist(whitelist)
        return threshold, whitelist

    def evaluate(self, vulnerabilities, policy, *, baseline = None, repository = None):
        """
        Evaluate the policy against the given vulnerabilities.

        In ``notification-delta`` mode, ``baseline`` is the set of vulnerabilities from
        the "old" side of the notification; only vulnerabilities absent from it
        participate.
        """
        threshold, whitelist = self.check(policy, repository)
        if policy.mode is Mode.NOTIFICATION_DELTA and baseline is None:
            baseline = VulnerabilitySet(self.scale)
        # Remove the whitelisted vulnerabilities first
        whitelisted_count = 0
        remaining = []
        for vuln in vulnerabilities.values():
            if vuln in whitelist:
                whitelisted_count += 1
            else:
                remaining.append(vuln)
        if policy.mode is Mode.NOTIFICATION_DELTA:
            remaining = [vuln for vuln in remaining if vuln.identity not in baseline]
        counts = VulnerabilitySet(self.scale, remaining).counts()
        contributing = [
            vuln
            for vuln in remaining
            if self.scale.at_least(vuln.severity, threshold)
        ]
        if len(contributing) > policy.max_allowed:
            decision = Decision.FAIL
        else:
            decision = Decision.PASS
        logger.info(
            f'Policy decision {decision.value}: {len(contributing)} vulnerabilities at or '
            f'above {threshold}, {whitelisted_count} whitelisted'
        )
        return Evaluation(
            decision = decision,
            contributing = contributing,
            whitelisted_count = whitelisted_count,
            threshold = threshold,
            counts = counts
        )
