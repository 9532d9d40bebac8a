"""
Module containing predicates that decide whether a scan result is terminal.

The service has no explicit "done" flag, so completeness is inferred from the
listers and detectors that have scanned the ancestry. A predicate receives the
previous and current results for an ancestry (either may be ``None``) and
returns true if the current result is terminal. Predicates are registered in
the ``phylax.gate.completeness`` entry point group.
"""

from importlib.metadata import entry_points

from .exceptions import PartialResultError


def scan_signal(result):
    """
    Returns the completeness signal for a result as a pair of frozensets
    ``(scanned_listers, scanned_detectors)``.
    """
    if result is None:
        return (frozenset(), frozenset())
    return (
        frozenset(result.ancestry.scanned_listers),
        frozenset(result.ancestry.scanned_detectors)
    )


def _raw(signal):
    return dict(listers = sorted(signal[0]), detectors = sorted(signal[1]))


def scanners_stable(previous, current):
    """
    A result is terminal once its listers and detectors are non-empty and the same
    as for the previous poll.

    Listers or detectors disappearing between polls means the service is giving
    inconsistent answers, which is raised rather than guessed past.
    """
    previous_signal, current_signal = scan_signal(previous), scan_signal(current)
    for seen, now in zip(previous_signal, current_signal):
        if not seen.issubset(now):
            raise PartialResultError(
                'scanned listers or detectors disagree between polls',
                status = current.status.model_dump(mode = 'json') if current else None,
                previous = _raw(previous_signal),
                current = _raw(current_signal)
            )
    listers, detectors = current_signal
    return bool(listers) and bool(detectors) and current_signal == previous_signal


def first_result(previous, current):
    """
    A result is terminal as soon as any lister or detector has scanned the ancestry.
    """
    listers, detectors = scan_signal(current)
    return bool(listers or detectors)


def resolve(name):
    """
    Returns the completeness predicate registered under the given name.
    """
    available = entry_points(group = 'phylax.gate.completeness')
    try:
        return next(ep for ep in available if ep.name == name).load()
    except StopIteration:
        names = ', '.join(sorted(ep.name for ep in available))
        raise ValueError(f'not a valid completeness predicate (available: {names})')
