"""
Module containing the ordered scale of vulnerability severities.
"""

from .exceptions import PolicyConfigError


#: The severity levels used by Clair, lowest first
DEFAULT_SEVERITIES = (
    'Unknown',
    'Negligible',
    'Low',
    'Medium',
    'High',
    'Critical',
    'Defcon1',
)


class SeverityScale:
    """
    A total order over severity levels.

    The order is configuration data rather than a property of the service, so
    every comparison between severities must go through a scale.
    """
    def __init__(self, levels = DEFAULT_SEVERITIES):
        levels = tuple(levels)
        if not levels:
            raise PolicyConfigError('severity scale must contain at least one level')
        ranks = {}
        for rank, level in enumerate(levels):
            if not isinstance(level, str) or not level.strip():
                raise PolicyConfigError(f'invalid severity level {level!r}')
            if level.lower() in ranks:
                raise PolicyConfigError(f'duplicate severity level {level!r}')
            ranks[level.lower()] = rank
        self.levels = levels
        self._ranks = ranks

    def __repr__(self):
        return f'SeverityScale({self.levels!r})'

    def __eq__(self, other):
        if not isinstance(other, SeverityScale):
            return NotImplemented
        return self.levels == other.levels

    def __hash__(self):
        return hash(self.levels)

    def __contains__(self, level):
        return self.recognises(level)

    def __iter__(self):
        return iter(self.levels)

    def recognises(self, level):
        """
        Returns true if the given level is part of the scale.
        """
        return isinstance(level, str) and level.lower() in self._ranks

    def canonical(self, level):
        """
        Returns the level as spelled by the scale, raising if it is not recognised.
        """
        if not self.recognises(level):
            available = ', '.join(self.levels)
            raise PolicyConfigError(f'{level!r} is not a severity level (available: {available})')
        return self.levels[self._ranks[level.lower()]]

    def rank(self, level):
        """
        Returns the rank of the given level.

        Levels that are not part of the scale rank below every known level.
        """
        if not self.recognises(level):
            return -1
        return self._ranks[level.lower()]

    def at_least(self, level, threshold):
        """
        Returns true if ``level`` is at or above ``threshold``.
        """
        return self.rank(level) >= self.rank(self.canonical(threshold))
