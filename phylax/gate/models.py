"""
Module containing models for the records exchanged with the scanning service.

The records mirror the Clair v3 API. Nested shapes are modelled as independent
records referenced by their parent.
"""

import datetime
from typing import Any, Dict, List, Optional

from dateutil.parser import parse as dateutil_parse

from pydantic import BaseModel, ConfigDict, Field, constr, field_validator


def parse_timestamp(value):
    """
    Parse a timestamp as sent by the service.

    Depending on the message, timestamps are RFC 3339 strings, unix seconds as a
    string or a protobuf ``{seconds, nanos}`` object. Empty values give ``None``.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, dict):
        seconds = int(value.get('seconds', 0)) + int(value.get('nanos', 0)) / 1e9
        return datetime.datetime.fromtimestamp(seconds, tz = datetime.timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.datetime.fromtimestamp(int(value), tz = datetime.timezone.utc)
    return dateutil_parse(value)


class Record(BaseModel):
    """
    Base class for records. Records are read-only snapshots.
    """
    model_config = ConfigDict(frozen = True, extra = 'ignore')

    @field_validator('*', mode = 'before')
    @classmethod
    def null_as_default(cls, value, info):
        # The service sends null for empty lists and strings
        if value is None:
            field = cls.model_fields[info.field_name]
            if not field.is_required():
                return field.get_default(call_default_factory = True)
        return value


class Layer(Record):
    """
    Model for a layer to be submitted for scanning.
    """
    #: The hash of the layer
    hash: constr(strip_whitespace = True, min_length = 1)
    #: The location of the layer (URL or path)
    location: constr(strip_whitespace = True, min_length = 1)
    #: HTTP headers the service must use when fetching the layer
    headers: Dict[str, str] = Field(default_factory = dict)

    def to_wire(self):
        return dict(hash = self.hash, path = self.location, headers = dict(self.headers))


class LayerRef(Record):
    """
    Model for a layer as reported back by the service.
    """
    hash: str = ''


class Vulnerability(Record):
    """
    Model for a vulnerability.
    """
    #: The name of the vulnerability, e.g. a CVE id
    name: str = ''
    #: The namespace in which the vulnerability was detected, e.g. ``debian:8``
    namespace_name: str = ''
    description: str = ''
    link: str = ''
    #: The severity as reported by the service
    severity: str = ''
    #: Namespace-agnostic metadata, usually JSON
    metadata: Any = ''
    #: The version of the feature that fixes the vulnerability
    fixed_by: str = ''
    #: The affected features, only populated inside notifications
    affected_versions: List['Feature'] = Field(default_factory = list)

    @property
    def identity(self):
        """
        The identity of the vulnerability for deduplication.
        """
        return (self.namespace_name, self.name)


class Feature(Record):
    """
    Model for a software package detected in an ancestry.
    """
    name: str = ''
    namespace_name: str = ''
    version: str = ''
    version_format: str = ''
    #: The vulnerabilities affecting the feature
    vulnerabilities: List[Vulnerability] = Field(default_factory = list)


Vulnerability.model_rebuild()


class ServiceStatus(Record):
    """
    Model for the status of the service, returned with every scan response.
    """
    #: The configured feature listers
    listers: List[str] = Field(default_factory = list)
    #: The configured namespace detectors
    detectors: List[str] = Field(default_factory = list)
    #: The time at which the vulnerability updater last ran
    last_update_time: Optional[datetime.datetime] = None

    @field_validator('last_update_time', mode = 'before')
    @classmethod
    def parse_last_update_time(cls, value):
        return parse_timestamp(value)


class Ancestry(Record):
    """
    Model for an ancestry, i.e. the scan results for an image.
    """
    #: The name of the ancestry, which is the scan identity
    name: str = ''
    #: The image format
    format: str = ''
    #: The features in the ancestry, only present if requested
    features: List[Feature] = Field(default_factory = list)
    #: The layers in the ancestry, in order
    layers: List[LayerRef] = Field(default_factory = list)
    #: The listers that have scanned the ancestry
    scanned_listers: List[str] = Field(default_factory = list)
    #: The detectors that have scanned the ancestry
    scanned_detectors: List[str] = Field(default_factory = list)


class AncestryResult(Record):
    """
    Model for the response to an ancestry request.
    """
    ancestry: Ancestry
    status: ServiceStatus = Field(default_factory = ServiceStatus)


class IndexedAncestryName(Record):
    """
    Model for an ancestry name in a page of a notification.
    """
    #: Ever-increasing index associated with the ancestry
    index: int = 0
    name: str = ''


class PagedVulnerableAncestries(Record):
    """
    Model for one page of the ancestries affected by a vulnerability.
    """
    #: Opaque cursor for this page
    current_page: str = ''
    #: Opaque cursor for the next page, empty at the end of the stream
    next_page: str = ''
    limit: int = 0
    vulnerability: Optional[Vulnerability] = None
    ancestries: List[IndexedAncestryName] = Field(default_factory = list)

    @property
    def exhausted(self):
        return not self.next_page


class Notification(Record):
    """
    Model for a notification of vulnerabilities that changed for tracked ancestries.
    """
    name: str = ''
    created: Optional[datetime.datetime] = None
    notified: Optional[datetime.datetime] = None
    deleted: Optional[datetime.datetime] = None
    #: The previous version of the vulnerability
    old: Optional[PagedVulnerableAncestries] = None
    #: The updated version of the vulnerability
    new: Optional[PagedVulnerableAncestries] = None

    @field_validator('created', 'notified', 'deleted', mode = 'before')
    @classmethod
    def parse_times(cls, value):
        return parse_timestamp(value)
