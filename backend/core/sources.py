"""
External source interfaces
The pipeline consumes these collaborators; implementations live outside this backend
"""

import abc
from datetime import datetime
from typing import Any, List, Sequence, Tuple


class LocationSampleSource(abc.ABC):
    """Yields location sample batches per user and time range"""

    name = "location_samples"

    @abc.abstractmethod
    async def fetch_samples(
        self, user_id: str, start: datetime, end: datetime
    ) -> Sequence[Any]:
        """Samples recorded in [start, end), as LocationSample models or raw rows"""


class HourlySummarySource(abc.ABC):
    """Hourly place/activity enrichment service"""

    name = "hourly_summaries"

    @abc.abstractmethod
    async def fetch_summaries(
        self, user_id: str, start: datetime, end: datetime
    ) -> Sequence[Any]:
        """Hourly summaries whose hour starts in [start, end)"""


class CommunicationSource(abc.ABC):
    """Communication event store (email, chat, calls, SMS, meetings)"""

    name = "communications"

    @abc.abstractmethod
    async def fetch_rows(
        self, user_id: str, start: datetime, end: datetime
    ) -> Sequence[Any]:
        """Communication rows touching [start, end)"""


class CalendarSource(abc.ABC):
    """Planned/actual calendar store"""

    name = "calendar"

    @abc.abstractmethod
    async def fetch_events(
        self, user_id: str, ymd: str
    ) -> Tuple[Sequence[Any], Sequence[Any]]:
        """(planned events, actual events) for one local day"""


class PlaceSource(abc.ABC):
    """Inferred places from the user's recent location history"""

    name = "places"

    @abc.abstractmethod
    async def fetch_places(self, user_id: str) -> List[Any]:
        """Inferred places for the user"""
