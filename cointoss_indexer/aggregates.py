"""Incremental counters shared by several handlers.

NetworkStats, Creator and Player summaries are advanced by deltas read from
the current unit; nothing here ever scans the store.
"""

from dataclasses import replace
from typing import Optional

from .entities import Creator, NetworkStats, Player, network_stats_id
from .store import StoreUnit
from .utils import _log


def load_network_stats(unit: StoreUnit, chain_id: int, timestamp: int) -> NetworkStats:
    stats = unit.get(NetworkStats, network_stats_id(chain_id))
    if stats is None:
        stats = NetworkStats(id=network_stats_id(chain_id), chain_id=chain_id, last_updated=timestamp)
    return stats


def bump_network_stats(unit: StoreUnit, chain_id: int, timestamp: int, **deltas: int) -> NetworkStats:
    """Apply counter deltas (e.g. ``active_pools=-1``) to the chain's stats record."""
    stats = load_network_stats(unit, chain_id, timestamp)
    changes = {}
    for name, delta in deltas.items():
        value = getattr(stats, name) + delta
        if value < 0:
            _log(f"WARN: network {chain_id} {name} would drop to {value}, holding at 0")
            value = 0
        changes[name] = value
    updated = replace(stats, last_updated=max(stats.last_updated, timestamp), **changes)
    unit.set(updated)
    return updated


def load_creator(unit: StoreUnit, creator_id: str, chain_id: int, timestamp: int) -> Creator:
    creator = unit.get(Creator, creator_id)
    if creator is None:
        creator = Creator(
            id=creator_id,
            address=creator_id,
            chain_id=chain_id,
            first_staked_at=timestamp,
            last_active_at=timestamp,
        )
    return creator


def touch_creator(unit: StoreUnit, creator: Creator, timestamp: int, **changes) -> Creator:
    updated = replace(creator, last_active_at=max(creator.last_active_at, timestamp), **changes)
    unit.set(updated)
    return updated


def load_player(unit: StoreUnit, player_id: str, timestamp: int) -> Player:
    player = unit.get(Player, player_id)
    if player is None:
        player = Player(id=player_id, address=player_id, first_joined_at=timestamp, last_active_at=timestamp)
    return player


def touch_player(unit: StoreUnit, player: Player, timestamp: int, **changes) -> Player:
    updated = replace(player, last_active_at=max(player.last_active_at, timestamp), **changes)
    unit.set(updated)
    return updated


def existing_player(unit: StoreUnit, player_id: str) -> Optional[Player]:
    player = unit.get(Player, player_id)
    if player is None:
        _log(f"WARN: player {player_id} not indexed yet, skipping player update")
    return player
