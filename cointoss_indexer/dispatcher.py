from enum import Enum

from .audit import append_event, audit_event_id, is_duplicate
from .chain_log import ChainLog, EventKind
from .errors import MalformedEventError
from .handlers import HANDLERS
from .store import EntityStore
from .utils import _log


class DispatchResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class Dispatcher:
    """Route decoded logs to their handler and commit the result as one unit.

    Logs must arrive one at a time in (block, logIndex) order per pool. A log
    whose audit record already exists is a redelivery and is skipped before
    any aggregate is touched. Store failures propagate and leave the sync
    position where it was, so the caller can retry the same log.
    """

    def __init__(self, store: EntityStore):
        self.store = store
        self.counts = {result: 0 for result in DispatchResult}

    def dispatch(self, log: ChainLog) -> DispatchResult:
        result = self._dispatch(log)
        self.counts[result] += 1
        return result

    def _dispatch(self, log: ChainLog) -> DispatchResult:
        kind = EventKind.parse(log.name)
        if kind is None:
            _log(f"WARN: no handler for event {log.name!r} at {log.dedup_key} on chain {log.chain_id}, dropping")
            return DispatchResult.IGNORED

        unit = self.store.unit()
        event_id = audit_event_id(kind, log)
        if is_duplicate(unit, event_id):
            _log(f"Skipping redelivered {log.name} at {log.dedup_key} (event {event_id})")
            return DispatchResult.DUPLICATE

        handler = HANDLERS[kind]
        try:
            refs = handler(log, unit)
        except MalformedEventError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedEventError(f"{log.name} at {log.dedup_key}: {exc}") from exc

        append_event(unit, event_id, kind, log, refs)
        self.store.commit(unit, log.chain_id, log.position, log.block_timestamp)
        return DispatchResult.APPLIED
