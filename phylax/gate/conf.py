"""
Settings for the phylax image gate.
"""

import functools
import json
import os
import pathlib
from typing import Any, Dict, List, Optional

import yaml

from pydantic import BaseModel, Field, NonNegativeInt, PositiveFloat, PositiveInt, constr, field_validator

from .exceptions import PolicyConfigError
from .poller import Backoff
from .severity import DEFAULT_SEVERITIES, SeverityScale


#: The prefix for environment variables that override settings
ENV_PREFIX = 'PHYLAX_GATE_'


class PolicySettings(BaseModel):
    """
    Model defining the default policy.
    """
    #: The lowest severity that fails the gate
    threshold: constr(min_length = 1) = 'Unknown'
    #: Inline whitelist patterns
    whitelist: List[Any] = Field(default_factory = list)
    #: Path to a YAML whitelist file with general and per-image entries
    whitelist_file: Optional[str] = None
    #: The number of vulnerabilities at or above the threshold that are tolerated
    max_allowed: NonNegativeInt = 0


class Settings(BaseModel):
    """
    Model defining settings for the gate.
    """
    #: The URL of the Clair v3 REST API
    clair_url: constr(min_length = 1) = 'http://localhost:6060'
    #: Headers to forward with every request to Clair, e.g. for authentication
    clair_headers: Dict[str, str] = Field(default_factory = dict)
    #: Basic auth credentials to forward to Clair
    clair_username: Optional[str] = None
    clair_password: Optional[str] = None
    #: The timeout for a single request, in seconds
    request_timeout: PositiveFloat = 30.0
    #: The maximum number of concurrent connections to Clair
    max_connections: PositiveInt = 10
    #: The backoff between polls
    backoff: Backoff = Field(default_factory = Backoff)
    #: The time to wait for a terminal scan result, in seconds
    poll_deadline: PositiveFloat = 600.0
    #: The name of the completeness predicate to use
    #: This must correspond to an entrypoint in the phylax.gate.completeness group
    completeness: constr(min_length = 1) = 'stable'
    #: The severity levels, lowest first
    severities: List[constr(min_length = 1)] = Field(default_factory = lambda: list(DEFAULT_SEVERITIES))
    #: The default registry for images without a registry
    #: Defaults to Docker hub
    default_registry: constr(min_length = 1) = "registry-1.docker.io"
    #: Credentials used to obtain registry tokens
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None
    #: The number of ancestries to request per notification page
    notification_page_size: PositiveInt = 100
    #: The default policy
    policy: PolicySettings = Field(default_factory = PolicySettings)

    @field_validator('severities')
    @classmethod
    def check_severities(cls, severities):
        try:
            SeverityScale(severities)
        except PolicyConfigError as exc:
            raise ValueError(exc.detail)
        return severities

    @property
    def severity_scale(self):
        return SeverityScale(self.severities)


def from_environment(config, environ = None):
    """
    Apply overrides from ``PHYLAX_GATE_<FIELD>`` environment variables to a config dict.

    Lists and mappings can be given as YAML, anything else is passed through as a string.
    """
    environ = os.environ if environ is None else environ
    config = dict(config)
    for name in Settings.model_fields:
        var_name = f'{ENV_PREFIX}{name.upper()}'
        if var_name in environ:
            value = environ[var_name]
            try:
                parsed = yaml.safe_load(value)
            except yaml.YAMLError:
                parsed = value
            config[name] = parsed if isinstance(parsed, (list, dict)) else value
    return config


def from_file(config_file, environ = None):
    """
    Build a settings object from a YAML or JSON config file.
    """
    path = pathlib.Path(config_file)
    with path.open('r') as fh:
        if path.suffix == '.json':
            config = json.load(fh)
        else:
            config = yaml.safe_load(fh)
    return Settings(**from_environment(config or {}, environ))


def from_env_file(var_name, default_file, environ = None):
    """
    Build a settings object from a config file specified by an environment variable.

    If the file does not exist, the settings come from the defaults and environment.
    """
    environ = os.environ if environ is None else environ
    config_file = environ.get(var_name, default_file)
    if not os.path.exists(config_file):
        return Settings(**from_environment({}, environ))
    return from_file(config_file, environ)


@functools.lru_cache(maxsize = 1)
def load_settings():
    """
    Load the settings for the process, once.
    """
    return from_env_file('PHYLAX_GATE_CONFIG', '/etc/phylax/gate.yaml')
