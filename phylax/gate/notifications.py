"""
Module containing the consumer for vulnerability notifications.

A notification describes a vulnerability that changed, with paginated lists of the
ancestries affected by the old and new versions of it. Consuming a notification
is an alternative to re-scanning every image whenever the vulnerability data changes.
"""

import logging

from .aggregator import VulnerabilityAggregator, VulnerabilitySet
from .exceptions import NotificationPendingError, PartialResultError
from .util import in_stage


logger = logging.getLogger(__name__)


#: The two sides of a notification
SIDES = ('old', 'new')


class NotificationDelta:
    """
    The drained contents of a notification.

    Attributes:
      name: The name of the notification.
      old: The aggregated "old" vulnerability, i.e. before the change.
      new: The aggregated "new" vulnerability, i.e. after the change.
      old_ancestries: The ancestries affected by the old vulnerability.
      new_ancestries: The ancestries affected by the new vulnerability.
    """
    def __init__(self, name, old, new, old_ancestries = (), new_ancestries = ()):
        self.name = name
        self.old = old
        self.new = new
        self.old_ancestries = tuple(old_ancestries)
        self.new_ancestries = tuple(new_ancestries)

    def __repr__(self):
        return (
            f'NotificationDelta({self.name!r}, '
            f'old = {len(self.old_ancestries)} ancestries, '
            f'new = {len(self.new_ancestries)} ancestries)'
        )

    def for_ancestry(self, ancestry):
        """
        Returns the delta as seen by a single ancestry.

        Each side only keeps its vulnerabilities if the ancestry is listed on that side.
        """
        def restrict(vulns, ancestries):
            if any(a.name == ancestry for a in ancestries):
                return vulns
            return VulnerabilitySet(vulns.scale)
        return NotificationDelta(
            self.name,
            restrict(self.old, self.old_ancestries),
            restrict(self.new, self.new_ancestries),
            [a for a in self.old_ancestries if a.name == ancestry],
            [a for a in self.new_ancestries if a.name == ancestry]
        )


class NotificationConsumer:
    """
    Pages through the old and new sides of a notification.

    Pages are fetched lazily. The cursor for the next page of each side is available
    in ``cursors``; paging can be resumed later by passing the cursors back in, but
    cursors are only meaningful for as long as the service keeps its state.
    """
    def __init__(self, client, name, *, page_size = 100,
                                        old_page = '',
                                        new_page = '',
                                        scale = None):
        self.client = client
        self.name = name
        self.page_size = page_size
        self.aggregator = VulnerabilityAggregator(scale)
        self._start = dict(old = old_page, new = new_page)
        #: The cursor for the next page to fetch on each side
        self.cursors = dict(self._start)
        self._drained = dict(old = False, new = False)
        self._marked = False
        #: The most recently fetched notification
        self.notification = None

    @property
    def drained(self):
        return all(self._drained.values())

    async def _fetch(self, side, cursor):
        other = 'new' if side == 'old' else 'old'
        pages = {side: cursor, other: self._start[other]}
        logger.debug(f'Fetching {side} page {cursor or "(first)"} of notification {self.name}')
        self.notification = await self.client.get_notification(
            self.name,
            old_page = pages['old'],
            new_page = pages['new'],
            limit = self.page_size
        )
        return getattr(self.notification, side)

    async def pages(self, side):
        """
        Yields the pages for one side of the notification until the last page.
        """
        if side not in SIDES:
            raise ValueError(f'side must be one of {", ".join(SIDES)}')
        cursor = self.cursors[side]
        while True:
            page = await self._fetch(side, cursor)
            if page is None:
                break
            yield page
            if page.exhausted:
                break
            if page.next_page == cursor:
                raise PartialResultError(
                    f'{side} page cursor for notification {self.name} did not advance',
                    stage = 'notification',
                    notification = self.name,
                    cursor = cursor
                )
            cursor = self.cursors[side] = page.next_page
        self._drained[side] = True

    def old_pages(self):
        return self.pages('old')

    def new_pages(self):
        return self.pages('new')

    async def ancestries(self, side):
        """
        Yields the indexed ancestry names for one side of the notification.
        """
        async for page in self.pages(side):
            for ancestry in page.ancestries:
                yield ancestry

    def old_ancestries(self):
        return self.ancestries('old')

    def new_ancestries(self):
        return self.ancestries('new')

    @in_stage('notification', ancestry_arg = None)
    async def drain(self):
        """
        Drain both sides of the notification and return the delta.
        """
        vulnerabilities = {}
        ancestries = {}
        for side in SIDES:
            vulnerabilities[side] = VulnerabilitySet(self.aggregator.scale)
            ancestries[side] = []
            async for page in self.pages(side):
                # The vulnerability is the same on every page of a side
                if not vulnerabilities[side]:
                    vulnerabilities[side] = self.aggregator.aggregate_notification(page)
                ancestries[side].extend(page.ancestries)
        logger.info(
            f'Drained notification {self.name}: {len(ancestries["old"])} old and '
            f'{len(ancestries["new"])} new ancestries'
        )
        return NotificationDelta(
            self.name,
            vulnerabilities['old'],
            vulnerabilities['new'],
            ancestries['old'],
            ancestries['new']
        )

    @in_stage('notification', ancestry_arg = None)
    async def mark_processed(self):
        """
        Mark the notification as processed.

        Both sides must have been drained first. Marking more than once is a no-op.
        """
        if self._marked:
            return
        if not self.drained:
            pending = ', '.join(side for side in SIDES if not self._drained[side])
            raise NotificationPendingError(
                f'notification {self.name} has undrained pages ({pending})',
                notification = self.name,
                cursors = dict(self.cursors)
            )
        await self.client.mark_notification_as_read(self.name)
        self._marked = True
        logger.info(f'Marked notification {self.name} as read')
