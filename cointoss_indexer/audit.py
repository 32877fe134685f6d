"""Append-only audit trail of processed chain logs.

Each processed log yields one Event record whose id is derived from the log
parameters alone, so a redelivered log maps onto the record it already
produced and can be recognised before any aggregate is touched.
"""

from dataclasses import dataclass
from typing import Optional

from .chain_log import ChainLog, EventKind
from .entities import Event, EventType
from .store import StoreUnit
from .utils import _json_dumps

EVENT_TYPES = {
    EventKind.POOL_CREATED: EventType.POOL_CREATED,
    EventKind.PLAYER_JOINED: EventType.PLAYER_JOINED,
    EventKind.POOL_ACTIVATED: EventType.POOL_ACTIVATED,
    EventKind.PLAYER_MADE_CHOICE: EventType.PLAYER_MADE_CHOICE,
    EventKind.ROUND_RESOLVED: EventType.ROUND_RESOLVED,
    EventKind.ROUND_REPEATED: EventType.ROUND_REPEATED,
    EventKind.GAME_COMPLETED: EventType.GAME_COMPLETED,
    EventKind.POOL_ABANDONED: EventType.POOL_ABANDONED,
    EventKind.STAKE_DEPOSITED: EventType.STAKE_DEPOSITED,
    EventKind.STAKE_WITHDRAWN: EventType.STAKE_WITHDRAWN,
    EventKind.CREATOR_VERIFIED: EventType.CREATOR_VERIFIED,
    EventKind.VERIFICATION_BONUS_APPLIED: EventType.VERIFICATION_BONUS_APPLIED,
    EventKind.CREATOR_REWARD_CLAIMED: EventType.CREATOR_REWARD_CLAIMED,
}


@dataclass(frozen=True)
class AuditRefs:
    """Foreign keys a handler reports for the audit record."""

    pool_id: Optional[str] = None
    player_id: Optional[str] = None
    creator_id: Optional[str] = None


def audit_event_id(kind: EventKind, log: ChainLog) -> str:
    if kind is EventKind.POOL_CREATED:
        return f"{log.pool_id()}-created"
    if kind is EventKind.PLAYER_JOINED:
        return f"{log.pool_id()}-{log.address_param('player')}-joined"
    if kind is EventKind.POOL_ACTIVATED:
        return f"{log.pool_id()}-activated"
    if kind is EventKind.GAME_COMPLETED:
        return f"{log.pool_id()}-completed"
    if kind is EventKind.POOL_ABANDONED:
        return f"{log.pool_id()}-abandoned"
    if kind is EventKind.ROUND_RESOLVED:
        return f"{log.pool_id()}-round-{log.int_param('round')}-resolved"
    if kind is EventKind.ROUND_REPEATED:
        return f"{log.pool_id()}-round-{log.int_param('round')}-repeated"
    if kind is EventKind.PLAYER_MADE_CHOICE:
        # A player picks again after a tie, so one round can carry several choices.
        return (
            f"{log.pool_id()}-{log.address_param('player')}-round-{log.int_param('round')}"
            f"-choice-{log.dedup_key}"
        )
    creator = log.address_param("creator")
    discriminator = {
        EventKind.STAKE_DEPOSITED: "staked",
        EventKind.STAKE_WITHDRAWN: "unstaked",
        EventKind.CREATOR_VERIFIED: "verified",
        EventKind.VERIFICATION_BONUS_APPLIED: "bonus",
        EventKind.CREATOR_REWARD_CLAIMED: "reward",
    }[kind]
    return f"creator-{creator}-{discriminator}-{log.dedup_key}"


def is_duplicate(unit: StoreUnit, event_id: str) -> bool:
    return unit.get(Event, event_id) is not None


def build_event(event_id: str, kind: EventKind, log: ChainLog, refs: AuditRefs) -> Event:
    return Event(
        id=event_id,
        event_type=EVENT_TYPES[kind],
        timestamp=log.block_timestamp,
        block_number=log.block_number,
        chain_id=log.chain_id,
        transaction_hash=log.transaction_ref,
        log_index=log.log_index,
        raw_data=_json_dumps(dict(log.params)),
        pool_id=refs.pool_id,
        player_id=refs.player_id,
        creator_id=refs.creator_id,
    )


def append_event(unit: StoreUnit, event_id: str, kind: EventKind, log: ChainLog, refs: AuditRefs) -> Event:
    event = build_event(event_id, kind, log, refs)
    unit.set(event)
    return event
