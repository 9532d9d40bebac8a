"""
Module containing the poller that waits for a scan to reach a terminal result.
"""

import asyncio
import logging
import time
import weakref

from pydantic import BaseModel, ConfigDict, PositiveFloat, confloat, model_validator

from .completeness import scanners_stable
from .exceptions import TransportError, ScanTimeoutError
from .util import in_stage


logger = logging.getLogger(__name__)


class Backoff(BaseModel):
    """
    Model for the backoff between polls.

    The interval starts at ``minimum`` and is multiplied by ``multiplier`` after
    every poll, up to ``maximum``. Values are in seconds.
    """
    model_config = ConfigDict(frozen = True)

    minimum: PositiveFloat = 1.0
    maximum: PositiveFloat = 30.0
    multiplier: confloat(ge = 1.0) = 2.0

    @model_validator(mode = 'after')
    def check_bounds(self):
        if self.maximum < self.minimum:
            raise ValueError('maximum backoff must not be less than minimum backoff')
        return self

    def intervals(self):
        """
        Yields the successive backoff intervals forever.
        """
        interval = self.minimum
        while True:
            yield interval
            interval = min(interval * self.multiplier, self.maximum)


class ScanPoller:
    """
    Polls the scanning service until the result for an ancestry is terminal.

    Only one request per ancestry name is outstanding at any time, so results for a
    name are observed in the order the requests were issued. If the polling task is
    cancelled while a request is in flight, the request is allowed to finish but its
    result is discarded.
    """
    def __init__(self, client, *, backoff = None,
                                  deadline = 600.0,
                                  is_terminal = scanners_stable,
                                  clock = time.monotonic,
                                  sleep = asyncio.sleep):
        self.client = client
        self.backoff = backoff or Backoff()
        self.deadline = deadline
        self.is_terminal = is_terminal
        self.clock = clock
        self.sleep = sleep
        #: Locks for the names being polled, dropped once no request holds or awaits them
        self._locks = weakref.WeakValueDictionary()

    def _lock(self, name):
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _fetch(self, name, with_vulnerabilities, with_features):
        async def request():
            lock = self._lock(name)
            async with lock:
                return await self.client.get_ancestry(
                    name,
                    with_vulnerabilities = with_vulnerabilities,
                    with_features = with_features
                )
        # Shielding lets an in-flight request complete even if we are cancelled
        return await asyncio.shield(request())

    @in_stage('poll')
    async def poll(self, name, *, with_vulnerabilities = True,
                                  with_features = True,
                                  deadline = None):
        """
        Poll until the result for the named ancestry is terminal and return it.

        Raises :py:class:`ScanTimeoutError` if no terminal result is seen before the
        deadline. Transport failures are retried on the backoff schedule until the
        deadline, after which the last one is raised.
        """
        expires = self.clock() + (self.deadline if deadline is None else deadline)
        intervals = self.backoff.intervals()
        previous = None
        attempt = 0
        while True:
            attempt += 1
            failure = None
            try:
                current = await self._fetch(name, with_vulnerabilities, with_features)
            except TransportError as exc:
                logger.warning(f'Poll {attempt} for {name} failed: {exc}')
                failure = exc
            else:
                if current is None:
                    logger.debug(f'Poll {attempt} for {name}: ancestry not found yet')
                elif self.is_terminal(previous, current):
                    logger.debug(f'Poll {attempt} for {name}: terminal')
                    return current
                else:
                    logger.debug(f'Poll {attempt} for {name}: not terminal')
                    previous = current
            interval = next(intervals)
            if self.clock() + interval > expires:
                if failure is not None:
                    raise failure
                raise ScanTimeoutError(
                    f'no terminal result after {attempt} poll(s)',
                    ancestry = name,
                    stage = 'poll',
                    status = previous.status.model_dump(mode = 'json') if previous else None
                )
            await self.sleep(interval)
