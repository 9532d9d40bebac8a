"""
Module containing the aggregation of vulnerabilities across the features of an ancestry.
"""

import logging
from collections.abc import Mapping
from typing import Any, FrozenSet

from sortedcontainers import SortedDict

from pydantic import BaseModel, ConfigDict, constr
from pydantic.dataclasses import dataclass

from .severity import SeverityScale


logger = logging.getLogger(__name__)


@dataclass(eq = True, frozen = True)
class FeatureRef:
    """
    Model identifying a feature affected by a vulnerability.
    """
    #: The name of the feature
    name: str
    #: The namespace in which the feature was detected
    namespace_name: str
    #: The version of the feature
    version: str

    def __str__(self):
        return f'{self.name}/{self.namespace_name}/{self.version}'


@dataclass(eq = True, frozen = True)
class Diagnostic:
    """
    Model for something noteworthy found while aggregating.
    """
    #: The kind of diagnostic, e.g. ``severity-conflict``
    kind: str
    #: The detail for the diagnostic
    detail: str


class AggregatedVulnerability(BaseModel):
    """
    Model for a vulnerability aggregated across all the features it affects.
    """
    model_config = ConfigDict(frozen = True)

    name: constr(min_length = 1)
    namespace_name: constr(min_length = 1)
    severity: str
    description: str = ''
    link: str = ''
    metadata: Any = ''
    fixed_by: str = ''
    #: The features affected by the vulnerability
    affected_features: FrozenSet[FeatureRef] = frozenset()

    @property
    def identity(self):
        return (self.namespace_name, self.name)

    def merge(self, other, scale):
        """
        Merge two aggregated vulnerabilities with the same identity.

        Returns a tuple of ``(merged, conflict)`` where ``conflict`` is true if the
        severities disagreed, in which case the higher severity is kept.
        """
        if self.identity != other.identity:
            raise ValueError('vulnerabilities are not compatible for aggregation')
        conflict = self.severity != other.severity
        if scale.rank(other.severity) > scale.rank(self.severity):
            severity = other.severity
        else:
            severity = self.severity
        merged = self.model_copy(
            update = dict(
                severity = severity,
                # Descriptive fields use the first non-empty value
                description = self.description or other.description,
                link = self.link or other.link,
                metadata = self.metadata or other.metadata,
                fixed_by = self.fixed_by or other.fixed_by,
                affected_features = self.affected_features | other.affected_features
            )
        )
        return merged, conflict


class ValueSortedDict(SortedDict):
    """
    Class for a dictionary whose keys are sorted using both the key and the value.
    """
    def __init__(self, key, *args, **kwargs):
        # The key function recieves the key and the value
        super().__init__(lambda k: key(k, self[k]), *args, **kwargs)

    def __setitem__(self, key, value):
        # Because the key function uses the value, it must be in self
        # before we attempt to add the key to the sorted list
        if key in self:
            self._list_remove(key)
        dict.__setitem__(self, key, value)
        self._list_add(key)

    _setitem = __setitem__

    def __delitem__(self, key):
        # The value must still be present when the key is removed from the sorted list
        self._list_remove(key)
        dict.__delitem__(self, key)


class VulnerabilitySet(Mapping):
    """
    Mapping of ``(namespace_name, name)`` to aggregated vulnerability.

    Vulnerabilities added to the set are merged with any existing vulnerability with
    the same identity. Iteration is ordered by severity descending, then namespace,
    then name.
    """
    def __init__(self, scale = None, vulnerabilities = None):
        self.scale = scale or SeverityScale()
        self._entries = ValueSortedDict(
            lambda identity, vuln: (-self.scale.rank(vuln.severity), identity)
        )
        self.diagnostics = []
        for vuln in vulnerabilities or []:
            self.add(vuln)

    def __getitem__(self, identity):
        return self._entries[identity]

    def __iter__(self):
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)

    def __repr__(self):
        return f'VulnerabilitySet({list(self._entries.values())!r})'

    def diagnose(self, kind, detail):
        self.diagnostics.append(Diagnostic(kind = kind, detail = detail))
        logger.warning(f'{kind}: {detail}')

    def add(self, vuln):
        """
        Add an aggregated vulnerability to the set, merging if required.
        """
        try:
            existing = self._entries[vuln.identity]
        except KeyError:
            self._entries[vuln.identity] = vuln
        else:
            merged, conflict = existing.merge(vuln, self.scale)
            if conflict:
                self.diagnose(
                    'severity-conflict',
                    '{}/{} reported as both {} and {}, using {}'.format(
                        vuln.namespace_name,
                        vuln.name,
                        existing.severity,
                        vuln.severity,
                        merged.severity
                    )
                )
            self._entries[vuln.identity] = merged

    def without(self, identities):
        """
        Returns the vulnerabilities whose identity is not in ``identities``, in order.
        """
        return [vuln for vuln in self.values() if vuln.identity not in identities]

    def counts(self):
        """
        Returns the number of vulnerabilities at each severity, highest first.

        Severities that are not part of the scale are counted under their own name.
        """
        counts = {level: 0 for level in reversed(self.scale.levels)}
        for vuln in self.values():
            level = self.scale.canonical(vuln.severity) if vuln.severity in self.scale else vuln.severity
            counts[level] = counts.get(level, 0) + 1
        return counts


class VulnerabilityAggregator:
    """
    Flattens the feature -> vulnerability tree of an ancestry into a deduplicated,
    severity-ordered set.
    """
    def __init__(self, scale = None):
        self.scale = scale or SeverityScale()

    def _add(self, result, vuln, features):
        # Entries without an identity are reported rather than failing the scan
        if not vuln.name or not vuln.namespace_name:
            result.diagnose(
                'malformed',
                'vulnerability {!r} in namespace {!r} affecting {} has no identity'.format(
                    vuln.name,
                    vuln.namespace_name,
                    ', '.join(str(f) for f in sorted(features, key = str)) or 'no features'
                )
            )
            return
        if not self.scale.recognises(vuln.severity):
            result.diagnose(
                'unrecognised-severity',
                f'{vuln.namespace_name}/{vuln.name} has severity {vuln.severity!r}'
            )
        result.add(
            AggregatedVulnerability(
                name = vuln.name,
                namespace_name = vuln.namespace_name,
                severity = vuln.severity,
                description = vuln.description,
                link = vuln.link,
                metadata = vuln.metadata,
                fixed_by = vuln.fixed_by,
                affected_features = frozenset(features)
            )
        )

    def aggregate(self, features):
        """
        Aggregate the vulnerabilities of the given features.
        """
        result = VulnerabilitySet(self.scale)
        for feature in features:
            ref = FeatureRef(
                name = feature.name,
                namespace_name = feature.namespace_name,
                version = feature.version
            )
            for vuln in feature.vulnerabilities:
                self._add(result, vuln, {ref})
        return result

    def aggregate_notification(self, page):
        """
        Aggregate the vulnerability of a notification page.

        The affected features come from the ``affected_versions`` of the vulnerability.
        """
        result = VulnerabilitySet(self.scale)
        if page is None or page.vulnerability is None:
            return result
        vuln = page.vulnerability
        features = {
            FeatureRef(
                name = feature.name,
                namespace_name = feature.namespace_name,
                version = feature.version
            )
            for feature in vuln.affected_versions
        }
        self._add(result, vuln, features)
        return result
