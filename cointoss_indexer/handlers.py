"""Per-event state derivation for the CoinToss pool lifecycle.

Handlers read through a :class:`StoreUnit` and stage new entity versions into
it; the dispatcher commits the unit. A handler never writes outside its unit,
so the same log applied to the same prior state stages the same writes.

Pool lifecycle::

    WAITING_FOR_PLAYERS -> ACTIVE -> COMPLETED
    WAITING_FOR_PLAYERS | ACTIVE -> ABANDONED
"""

from dataclasses import replace
from typing import Callable, Dict, FrozenSet, Optional

from .aggregates import (
    bump_network_stats,
    existing_player,
    load_creator,
    load_player,
    touch_creator,
    touch_player,
)
from .audit import AuditRefs
from .chain_log import ChainLog, EventKind
from .entities import (
    Creator,
    GameRound,
    PlayerChoice,
    PlayerChoiceType,
    PlayerPool,
    PlayerPoolStatus,
    Pool,
    PoolStatus,
    StakeEvent,
    StakeEventType,
    game_round_id,
    player_choice_id,
    player_pool_id,
)
from .errors import InvalidTransitionError, MalformedEventError
from .store import StoreUnit
from .utils import _log

Handler = Callable[[ChainLog, StoreUnit], AuditRefs]

TRANSITIONS: Dict[PoolStatus, FrozenSet[PoolStatus]] = {
    PoolStatus.WAITING_FOR_PLAYERS: frozenset({PoolStatus.ACTIVE, PoolStatus.ABANDONED}),
    PoolStatus.ACTIVE: frozenset({PoolStatus.COMPLETED, PoolStatus.ABANDONED}),
    PoolStatus.COMPLETED: frozenset(),
    PoolStatus.ABANDONED: frozenset(),
}


def transition(pool: Pool, target: PoolStatus, **changes) -> Pool:
    if target not in TRANSITIONS[pool.status]:
        raise InvalidTransitionError(pool.id, pool.status.value, target.value)
    return replace(pool, status=target, **changes)


def _existing_pool(unit: StoreUnit, log: ChainLog, pool_id: str) -> Optional[Pool]:
    pool = unit.get(Pool, pool_id)
    if pool is None:
        _log(f"WARN: {log.name} at {log.dedup_key}: pool {pool_id} not indexed yet, skipping pool update")
    return pool


def _open_pool(unit: StoreUnit, log: ChainLog, pool_id: str) -> Optional[Pool]:
    """The pool if it is indexed and not yet COMPLETED or ABANDONED."""
    pool = _existing_pool(unit, log, pool_id)
    if pool is not None and not TRANSITIONS[pool.status]:
        _log(f"WARN: {log.name} at {log.dedup_key}: pool {pool_id} is {pool.status.value}, skipping pool update")
        return None
    return pool


def _existing_creator(unit: StoreUnit, log: ChainLog, creator_id: str) -> Optional[Creator]:
    creator = unit.get(Creator, creator_id)
    if creator is None:
        _log(f"WARN: {log.name} at {log.dedup_key}: creator {creator_id} not indexed yet, skipping")
    return creator


def handle_pool_created(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    creator_id = log.address_param("creator")
    ts = log.block_timestamp
    refs = AuditRefs(pool_id=pool_id, creator_id=creator_id)

    if unit.get(Pool, pool_id) is not None:
        _log(f"WARN: PoolCreated at {log.dedup_key}: pool {pool_id} already exists, leaving it untouched")
        return refs

    creator = load_creator(unit, creator_id, log.chain_id, ts)
    touch_creator(unit, creator, ts, total_pools_created=creator.total_pools_created + 1)

    unit.set(
        Pool(
            id=pool_id,
            creator_id=creator_id,
            status=PoolStatus.WAITING_FOR_PLAYERS,
            entry_fee=log.int_param("entryFee"),
            max_players=log.int_param("maxPlayers"),
            current_players=0,
            prize_pool=0,
            current_round=0,
            chain_id=log.chain_id,
            created_at=ts,
            created_at_block=log.block_number,
        )
    )
    bump_network_stats(unit, log.chain_id, ts, total_pools=1)
    return refs


def handle_player_joined(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    player_id = log.address_param("player")
    reported = log.int_param("currentPlayers")
    ts = log.block_timestamp

    pool = _open_pool(unit, log, pool_id)
    player = load_player(unit, player_id, ts)
    spent = player.total_spent
    entry_fee = None

    if pool is not None:
        entry_fee = pool.entry_fee
        current = reported
        if current > pool.max_players:
            _log(
                f"WARN: PlayerJoined at {log.dedup_key}: pool {pool_id} reports {current} players "
                f"over its cap of {pool.max_players}, clamping"
            )
            current = pool.max_players
        unit.set(replace(pool, current_players=current, prize_pool=pool.prize_pool + entry_fee))
        spent += entry_fee
        bump_network_stats(unit, log.chain_id, ts, total_volume=entry_fee)

    touch_player(
        unit,
        player,
        ts,
        total_pools_joined=player.total_pools_joined + 1,
        total_spent=spent,
    )
    unit.set(
        PlayerPool(
            id=player_pool_id(pool_id, player_id),
            pool_id=pool_id,
            player_id=player_id,
            status=PlayerPoolStatus.ACTIVE,
            joined_at=ts,
            joined_at_block=log.block_number,
            chain_id=log.chain_id,
            entry_fee_paid=entry_fee,
        )
    )
    return AuditRefs(pool_id=pool_id, player_id=player_id)


def handle_pool_activated(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    pool = _existing_pool(unit, log, pool_id)
    if pool is None:
        return AuditRefs(pool_id=pool_id)

    try:
        activated = transition(
            pool,
            PoolStatus.ACTIVE,
            current_round=1,
            # Authoritative recomputation; replaces the per-join running total.
            prize_pool=pool.entry_fee * pool.current_players,
            activated_at=log.block_timestamp,
            activated_at_block=log.block_number,
        )
    except InvalidTransitionError as exc:
        _log(f"WARN: PoolActivated at {log.dedup_key}: {exc}")
        return AuditRefs(pool_id=pool_id, creator_id=pool.creator_id)

    unit.set(activated)
    bump_network_stats(unit, log.chain_id, log.block_timestamp, active_pools=1)
    return AuditRefs(pool_id=pool_id, creator_id=pool.creator_id)


def handle_player_made_choice(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    player_id = log.address_param("player")
    round_number = log.int_param("round")
    try:
        choice = PlayerChoiceType.from_contract(log.int_param("choice"))
    except ValueError as exc:
        raise MalformedEventError(f"PlayerMadeChoice at {log.dedup_key}: {exc}") from exc

    unit.set(
        PlayerChoice(
            id=player_choice_id(pool_id, player_id, round_number),
            pool_id=pool_id,
            player_id=player_id,
            round_number=round_number,
            choice=choice,
            made_at=log.block_timestamp,
            made_at_block=log.block_number,
            chain_id=log.chain_id,
        )
    )
    player = existing_player(unit, player_id)
    if player is not None:
        touch_player(unit, player, log.block_timestamp)
    return AuditRefs(pool_id=pool_id, player_id=player_id)


def handle_round_resolved(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    round_number = log.int_param("round")
    eliminated = log.int_param("eliminatedCount")
    remaining = log.int_param("remainingCount")
    winning = log.optional_int_param("winningChoice")

    # Survivors are the round winners. Individual PlayerPool rows stay ACTIVE:
    # this log carries counts only, not which players were eliminated.
    # One GameRound per audit id, so a redelivery never reaches this point.
    unit.set(
        GameRound(
            id=game_round_id(pool_id, round_number),
            pool_id=pool_id,
            round_number=round_number,
            eliminated_players=eliminated,
            remaining_players=remaining,
            round_winners=remaining,
            is_tie=False,
            created_at=log.block_timestamp,
            created_at_block=log.block_number,
            chain_id=log.chain_id,
            winning_choice=PlayerChoiceType.from_contract(winning) if winning in (1, 2) else None,
        )
    )

    pool = _open_pool(unit, log, pool_id)
    if pool is not None:
        unit.set(replace(pool, current_round=round_number + 1, current_players=remaining))
    return AuditRefs(pool_id=pool_id)


def handle_round_repeated(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    round_number = log.int_param("round")
    pool = _existing_pool(unit, log, pool_id)
    remaining = pool.current_players if pool is not None else 0

    # Unanimous choice: nobody is eliminated and the round number is reused.
    unit.set(
        GameRound(
            id=game_round_id(pool_id, round_number, tie=True),
            pool_id=pool_id,
            round_number=round_number,
            eliminated_players=0,
            remaining_players=remaining,
            round_winners=0,
            is_tie=True,
            created_at=log.block_timestamp,
            created_at_block=log.block_number,
            chain_id=log.chain_id,
        )
    )
    return AuditRefs(pool_id=pool_id)


def handle_game_completed(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    winner_id = log.address_param("winner")
    prize = log.int_param("prizeAmount")
    ts = log.block_timestamp
    creator_id = None

    pool = _existing_pool(unit, log, pool_id)
    if pool is not None:
        creator_id = pool.creator_id
        try:
            completed = transition(
                pool,
                PoolStatus.COMPLETED,
                winner_id=winner_id,
                prize_amount=prize,
                completed_at=ts,
                completed_at_block=log.block_number,
            )
        except InvalidTransitionError as exc:
            _log(f"WARN: GameCompleted at {log.dedup_key}: {exc}")
        else:
            unit.set(completed)
            creator = _existing_creator(unit, log, pool.creator_id)
            if creator is not None:
                touch_creator(unit, creator, ts, completed_pools=creator.completed_pools + 1)
            bump_network_stats(
                unit, log.chain_id, ts, active_pools=-1, completed_pools=1, total_prizes=prize
            )

    player_pool = unit.get(PlayerPool, player_pool_id(pool_id, winner_id))
    if player_pool is None:
        _log(f"WARN: GameCompleted at {log.dedup_key}: winner {winner_id} never joined pool {pool_id}")
    else:
        unit.set(replace(player_pool, status=PlayerPoolStatus.WON, prize_amount=prize))

    winner = existing_player(unit, winner_id)
    if winner is not None:
        touch_player(
            unit,
            winner,
            ts,
            total_pools_won=winner.total_pools_won + 1,
            total_earnings=winner.total_earnings + prize,
        )
    return AuditRefs(pool_id=pool_id, player_id=winner_id, creator_id=creator_id)


def handle_pool_abandoned(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    pool_id = log.pool_id()
    ts = log.block_timestamp
    pool = _existing_pool(unit, log, pool_id)
    if pool is None:
        return AuditRefs(pool_id=pool_id, creator_id=log.address_param("creator"))

    try:
        abandoned = transition(pool, PoolStatus.ABANDONED, completed_at=ts, completed_at_block=log.block_number)
    except InvalidTransitionError as exc:
        _log(f"WARN: PoolAbandoned at {log.dedup_key}: {exc}")
        return AuditRefs(pool_id=pool_id, creator_id=pool.creator_id)

    unit.set(abandoned)
    creator = _existing_creator(unit, log, pool.creator_id)
    if creator is not None:
        touch_creator(unit, creator, ts, abandoned_pools=creator.abandoned_pools + 1)
    deltas = {"abandoned_pools": 1}
    if pool.status is PoolStatus.ACTIVE:
        deltas["active_pools"] = -1
    bump_network_stats(unit, log.chain_id, ts, **deltas)
    return AuditRefs(pool_id=pool_id, creator_id=pool.creator_id)


def _stake_event(log: ChainLog, creator_id: str, stake_type: StakeEventType, amount: int, **extra) -> StakeEvent:
    return StakeEvent(
        id=f"{log.chain_id}_{log.dedup_key}",
        creator_id=creator_id,
        stake_type=stake_type,
        amount=amount,
        timestamp=log.block_timestamp,
        block_number=log.block_number,
        transaction_hash=log.transaction_ref,
        chain_id=log.chain_id,
        **extra,
    )


def handle_stake_deposited(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    creator_id = log.address_param("creator")
    amount = log.int_param("amount")
    eligible = log.int_param("poolsEligible")
    ts = log.block_timestamp

    creator = load_creator(unit, creator_id, log.chain_id, ts)
    touch_creator(
        unit,
        creator,
        ts,
        total_staked=creator.total_staked + amount,
        total_pools_eligible=eligible,
    )
    unit.set(_stake_event(log, creator_id, StakeEventType.DEPOSIT, amount, pools_eligible=eligible))
    bump_network_stats(unit, log.chain_id, ts, total_staked=amount)
    return AuditRefs(creator_id=creator_id)


def handle_stake_withdrawn(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    creator_id = log.address_param("creator")
    amount = log.int_param("amount")
    penalty = log.optional_int_param("penalty")
    ts = log.block_timestamp

    creator = _existing_creator(unit, log, creator_id)
    if creator is not None:
        touch_creator(
            unit,
            creator,
            ts,
            total_staked=max(creator.total_staked - amount, 0),
            total_pools_eligible=0,
        )
    unit.set(
        _stake_event(log, creator_id, StakeEventType.WITHDRAW, amount, pools_eligible=0, penalty=penalty)
    )
    bump_network_stats(unit, log.chain_id, ts, total_staked=-amount)
    return AuditRefs(creator_id=creator_id)


def handle_creator_verified(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    creator_id = log.address_param("creator")
    creator = _existing_creator(unit, log, creator_id)
    if creator is not None:
        touch_creator(
            unit,
            creator,
            log.block_timestamp,
            is_verified=True,
            verified_at=log.block_timestamp,
            attestation_id=log.str_param("attestationId"),
        )
    return AuditRefs(creator_id=creator_id)


def handle_verification_bonus_applied(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    creator_id = log.address_param("creator")
    bonus = log.int_param("bonusPools")
    creator = _existing_creator(unit, log, creator_id)
    if creator is not None:
        touch_creator(
            unit,
            creator,
            log.block_timestamp,
            verification_bonus_pools=creator.verification_bonus_pools + bonus,
        )
    return AuditRefs(creator_id=creator_id)


def handle_creator_reward_claimed(log: ChainLog, unit: StoreUnit) -> AuditRefs:
    creator_id = log.address_param("creator")
    amount = log.int_param("amount")
    creator = _existing_creator(unit, log, creator_id)
    if creator is not None:
        touch_creator(unit, creator, log.block_timestamp, total_earned=creator.total_earned + amount)
    return AuditRefs(creator_id=creator_id)


HANDLERS: Dict[EventKind, Handler] = {
    EventKind.POOL_CREATED: handle_pool_created,
    EventKind.PLAYER_JOINED: handle_player_joined,
    EventKind.POOL_ACTIVATED: handle_pool_activated,
    EventKind.PLAYER_MADE_CHOICE: handle_player_made_choice,
    EventKind.ROUND_RESOLVED: handle_round_resolved,
    EventKind.ROUND_REPEATED: handle_round_repeated,
    EventKind.GAME_COMPLETED: handle_game_completed,
    EventKind.POOL_ABANDONED: handle_pool_abandoned,
    EventKind.STAKE_DEPOSITED: handle_stake_deposited,
    EventKind.STAKE_WITHDRAWN: handle_stake_withdrawn,
    EventKind.CREATOR_VERIFIED: handle_creator_verified,
    EventKind.VERIFICATION_BONUS_APPLIED: handle_verification_bonus_applied,
    EventKind.CREATOR_REWARD_CLAIMED: handle_creator_reward_claimed,
}

_unmapped = set(EventKind) - set(HANDLERS)
if _unmapped:
    raise RuntimeError(f"no handler registered for {sorted(k.value for k in _unmapped)}")
