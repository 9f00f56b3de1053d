from typing import Any, Iterable, Iterator, Optional, Tuple

from kyc_workflow.schemas import ClientKycRecord, KycHistoryEvent


def append(record: ClientKycRecord, event: KycHistoryEvent) -> KycHistoryEvent:
    """Append an event to a working copy of a record. Only transitions call this."""
    record.history.append(event)
    return event


class HistoryView:
    """
    Restartable view over a snapshot of events.

    Events are ordered by `created_at`; events sharing a timestamp keep their
    append order (reversed when newest_first is set). Iterating twice yields
    the same sequence.
    """

    def __init__(self, events: Iterable[Any], newest_first: bool = False):
        self._events: Tuple[Any, ...] = tuple(events)
        self.newest_first = newest_first

    def __iter__(self) -> Iterator[Any]:
        ordered = sorted(self._events, key=lambda e: e.created_at)
        if self.newest_first:
            ordered.reverse()
        return iter(ordered)

    def __len__(self) -> int:
        return len(self._events)

    def latest(self) -> Optional[Any]:
        if not self._events:
            return None
        return max(reversed(self._events), key=lambda e: e.created_at)


class KycHistoryLedger:
    """Read side of the KYC history, backed by the client store."""

    def __init__(self, store):
        self.store = store

    def list_for(self, client_id: str, newest_first: bool = False) -> HistoryView:
        client = self.store.get(client_id)
        return HistoryView(client.kyc.history, newest_first=newest_first)
