"""Entity records derived from CoinToss contract logs.

Every record is a frozen dataclass; a handler never edits a record it has
read, it builds the next version with ``dataclasses.replace``. Amounts,
timestamps and block numbers are plain ints so wei values keep full
precision.
"""

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type


class PoolStatus(str, Enum):
    WAITING_FOR_PLAYERS = "WAITING_FOR_PLAYERS"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class PlayerPoolStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ELIMINATED = "ELIMINATED"
    WON = "WON"


class PlayerChoiceType(str, Enum):
    HEADS = "HEADS"
    TAILS = "TAILS"

    @classmethod
    def from_contract(cls, value: int) -> "PlayerChoiceType":
        # CoinToss.PlayerChoice: NONE = 0, HEADS = 1, TAILS = 2
        if value == 1:
            return cls.HEADS
        if value == 2:
            return cls.TAILS
        raise ValueError(f"not a player choice: {value}")


class StakeEventType(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class EventType(str, Enum):
    POOL_CREATED = "POOL_CREATED"
    PLAYER_JOINED = "PLAYER_JOINED"
    POOL_ACTIVATED = "POOL_ACTIVATED"
    PLAYER_MADE_CHOICE = "PLAYER_MADE_CHOICE"
    ROUND_RESOLVED = "ROUND_RESOLVED"
    ROUND_REPEATED = "ROUND_REPEATED"
    GAME_COMPLETED = "GAME_COMPLETED"
    POOL_ABANDONED = "POOL_ABANDONED"
    STAKE_DEPOSITED = "STAKE_DEPOSITED"
    STAKE_WITHDRAWN = "STAKE_WITHDRAWN"
    CREATOR_VERIFIED = "CREATOR_VERIFIED"
    VERIFICATION_BONUS_APPLIED = "VERIFICATION_BONUS_APPLIED"
    CREATOR_REWARD_CLAIMED = "CREATOR_REWARD_CLAIMED"


@dataclass(frozen=True)
class Entity:
    kind: ClassVar[str] = ""
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}

    id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name, enum_cls in cls.enum_fields.items():
            if values.get(name) is not None:
                values[name] = enum_cls(values[name])
        return cls(**values)


@dataclass(frozen=True)
class Pool(Entity):
    kind: ClassVar[str] = "Pool"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": PoolStatus}

    creator_id: str
    status: PoolStatus
    entry_fee: int
    max_players: int
    current_players: int
    prize_pool: int
    current_round: int
    chain_id: int
    created_at: int
    created_at_block: int
    winner_id: Optional[str] = None
    prize_amount: Optional[int] = None
    activated_at: Optional[int] = None
    activated_at_block: Optional[int] = None
    completed_at: Optional[int] = None
    completed_at_block: Optional[int] = None


@dataclass(frozen=True)
class Player(Entity):
    kind: ClassVar[str] = "Player"

    address: str
    first_joined_at: int
    last_active_at: int
    total_pools_joined: int = 0
    total_pools_won: int = 0
    total_pools_eliminated: int = 0
    total_earnings: int = 0
    total_spent: int = 0


@dataclass(frozen=True)
class Creator(Entity):
    kind: ClassVar[str] = "Creator"

    address: str
    chain_id: int
    first_staked_at: int
    last_active_at: int
    total_pools_created: int = 0
    completed_pools: int = 0
    abandoned_pools: int = 0
    total_staked: int = 0
    total_earned: int = 0
    total_pools_eligible: int = 0
    is_verified: bool = False
    verification_bonus_pools: int = 0
    attestation_id: Optional[str] = None
    verified_at: Optional[int] = None


@dataclass(frozen=True)
class PlayerPool(Entity):
    kind: ClassVar[str] = "PlayerPool"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": PlayerPoolStatus}

    pool_id: str
    player_id: str
    status: PlayerPoolStatus
    joined_at: int
    joined_at_block: int
    chain_id: int
    entry_fee_paid: Optional[int] = None
    prize_amount: Optional[int] = None
    eliminated_at: Optional[int] = None
    eliminated_at_block: Optional[int] = None
    eliminated_in_round: Optional[int] = None


@dataclass(frozen=True)
class GameRound(Entity):
    kind: ClassVar[str] = "GameRound"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"winning_choice": PlayerChoiceType}

    pool_id: str
    round_number: int
    eliminated_players: int
    remaining_players: int
    round_winners: int
    is_tie: bool
    created_at: int
    created_at_block: int
    chain_id: int
    winning_choice: Optional[PlayerChoiceType] = None


@dataclass(frozen=True)
class PlayerChoice(Entity):
    kind: ClassVar[str] = "PlayerChoice"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"choice": PlayerChoiceType}

    pool_id: str
    player_id: str
    round_number: int
    choice: PlayerChoiceType
    made_at: int
    made_at_block: int
    chain_id: int


@dataclass(frozen=True)
class StakeEvent(Entity):
    kind: ClassVar[str] = "StakeEvent"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"stake_type": StakeEventType}

    creator_id: str
    stake_type: StakeEventType
    amount: int
    pools_eligible: int
    timestamp: int
    block_number: int
    transaction_hash: str
    chain_id: int
    penalty: Optional[int] = None


@dataclass(frozen=True)
class Event(Entity):
    kind: ClassVar[str] = "Event"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"event_type": EventType}

    event_type: EventType
    timestamp: int
    block_number: int
    chain_id: int
    transaction_hash: str
    log_index: int
    raw_data: str
    pool_id: Optional[str] = None
    player_id: Optional[str] = None
    creator_id: Optional[str] = None


@dataclass(frozen=True)
class NetworkStats(Entity):
    kind: ClassVar[str] = "NetworkStats"

    chain_id: int
    last_updated: int
    total_pools: int = 0
    active_pools: int = 0
    completed_pools: int = 0
    abandoned_pools: int = 0
    total_volume: int = 0
    total_prizes: int = 0
    total_staked: int = 0


ENTITY_TYPES: Dict[str, Type[Entity]] = {
    cls.kind: cls
    for cls in (Pool, Player, Creator, PlayerPool, GameRound, PlayerChoice, StakeEvent, Event, NetworkStats)
}


def player_pool_id(pool_id: str, player_id: str) -> str:
    return f"{pool_id}-{player_id}"


def game_round_id(pool_id: str, round_number: int, tie: bool = False) -> str:
    if tie:
        return f"{pool_id}-{round_number}-tie"
    return f"{pool_id}-{round_number}"


def player_choice_id(pool_id: str, player_id: str, round_number: int) -> str:
    return f"{pool_id}-{player_id}-{round_number}"


def network_stats_id(chain_id: int) -> str:
    return f"network-{chain_id}"
