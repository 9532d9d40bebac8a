"""
Module containing whitelists of vulnerabilities that must not fail the gate.
"""

from collections.abc import Mapping, Sequence

import yaml

from .exceptions import PolicyConfigError


def _check_part(part, pattern):
    if not isinstance(part, str) or not part or part != part.strip() or any(c.isspace() for c in part):
        raise PolicyConfigError(f'malformed whitelist pattern {pattern!r}')
    return part


class WhitelistEntry:
    """
    A single whitelist pattern.

    If ``namespace_name`` is ``None``, the entry matches the vulnerability name in
    every namespace.
    """
    __slots__ = ('namespace_name', 'name')

    def __init__(self, name, namespace_name = None):
        self.name = name
        self.namespace_name = namespace_name

    def __eq__(self, other):
        if not isinstance(other, WhitelistEntry):
            return NotImplemented
        return (self.namespace_name, self.name) == (other.namespace_name, other.name)

    def __hash__(self):
        return hash((self.namespace_name, self.name))

    def __repr__(self):
        return f'WhitelistEntry({self.name!r}, namespace_name = {self.namespace_name!r})'

    def __str__(self):
        if self.namespace_name is None:
            return self.name
        return f'{self.namespace_name}/{self.name}'

    @classmethod
    def parse(cls, pattern):
        """
        Parse a whitelist pattern.

        A pattern is ``NAME``, ``NAMESPACE/NAME`` (split on the last slash), a pair
        ``(NAMESPACE, NAME)`` or a mapping with ``namespace_name`` and ``name``.
        """
        if isinstance(pattern, WhitelistEntry):
            return pattern
        if isinstance(pattern, str):
            namespace_name, sep, name = pattern.rpartition('/')
            if sep:
                return cls(_check_part(name, pattern), _check_part(namespace_name, pattern))
            return cls(_check_part(name, pattern))
        if isinstance(pattern, Mapping):
            if set(pattern) - {'namespace_name', 'namespace', 'name'} or 'name' not in pattern:
                raise PolicyConfigError(f'malformed whitelist pattern {pattern!r}')
            namespace_name = pattern.get('namespace_name', pattern.get('namespace'))
            name = _check_part(pattern['name'], pattern)
            if namespace_name is None:
                return cls(name)
            return cls(name, _check_part(namespace_name, pattern))
        if isinstance(pattern, Sequence) and len(pattern) == 2:
            namespace_name, name = pattern
            return cls(_check_part(name, pattern), _check_part(namespace_name, pattern))
        raise PolicyConfigError(f'malformed whitelist pattern {pattern!r}')

    def matches(self, vuln):
        if self.namespace_name is None:
            return vuln.name == self.name
        return (vuln.namespace_name, vuln.name) == (self.namespace_name, self.name)


class Whitelist:
    """
    A set of whitelist patterns.
    """
    def __init__(self, patterns = None):
        if isinstance(patterns, (str, Mapping)):
            raise PolicyConfigError('whitelist must be a list of patterns')
        entries = [WhitelistEntry.parse(pattern) for pattern in (patterns or [])]
        self._identities = {
            (entry.namespace_name, entry.name)
            for entry in entries
            if entry.namespace_name is not None
        }
        self._names = {entry.name for entry in entries if entry.namespace_name is None}
        self.entries = tuple(dict.fromkeys(entries))

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __eq__(self, other):
        if not isinstance(other, Whitelist):
            return NotImplemented
        return set(self.entries) == set(other.entries)

    def __repr__(self):
        return f'Whitelist({[str(entry) for entry in self.entries]!r})'

    def __contains__(self, vuln):
        return vuln.name in self._names or (vuln.namespace_name, vuln.name) in self._identities

    def union(self, other):
        if not isinstance(other, Whitelist):
            other = Whitelist(other)
        return Whitelist(self.entries + other.entries)


class WhitelistFile:
    """
    Whitelist loaded from a YAML file with general and per-image entries::

        general:
          - CVE-2016-0001
          - debian:8/CVE-2016-0002
        images:
          library/nginx:
            - CVE-2017-0001
    """
    def __init__(self, general = None, images = None):
        self.general = Whitelist(general)
        if images is not None and not isinstance(images, Mapping):
            raise PolicyConfigError('whitelist images must be a mapping of image to patterns')
        self.images = {
            image: Whitelist(patterns)
            for image, patterns in (images or {}).items()
        }

    def for_image(self, repository = None):
        """
        Returns the whitelist that applies to the given image repository.
        """
        image_whitelist = self.images.get(repository) if repository else None
        if image_whitelist is None:
            return self.general
        return self.general.union(image_whitelist)

    @classmethod
    def from_file(cls, path):
        """
        Load a whitelist file.
        """
        try:
            with open(path, 'r') as fh:
                content = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise PolicyConfigError(f'could not load whitelist file {path}: {exc}') from exc
        if content is None:
            return cls()
        if isinstance(content, list):
            # A plain list is a general whitelist
            return cls(general = content)
        if not isinstance(content, Mapping) or set(content) - {'general', 'images'}:
            raise PolicyConfigError(f'whitelist file {path} must contain general and/or images')
        return cls(general = content.get('general'), images = content.get('images'))
