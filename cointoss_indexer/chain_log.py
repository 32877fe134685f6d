from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import MalformedEventError
from .utils import _db_addr, _parse_int


class EventKind(str, Enum):
    """CoinToss contract events this indexer derives state from."""

    POOL_CREATED = "PoolCreated"
    PLAYER_JOINED = "PlayerJoined"
    POOL_ACTIVATED = "PoolActivated"
    PLAYER_MADE_CHOICE = "PlayerMadeChoice"
    ROUND_RESOLVED = "RoundResolved"
    ROUND_REPEATED = "RoundRepeated"
    GAME_COMPLETED = "GameCompleted"
    POOL_ABANDONED = "PoolAbandoned"
    STAKE_DEPOSITED = "StakeDeposited"
    STAKE_WITHDRAWN = "StakeWithdrawn"
    CREATOR_VERIFIED = "CreatorVerified"
    VERIFICATION_BONUS_APPLIED = "VerificationBonusApplied"
    CREATOR_REWARD_CLAIMED = "CreatorRewardClaimed"

    @classmethod
    def parse(cls, name: str) -> Optional["EventKind"]:
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class ChainLog:
    """A decoded contract log plus the block metadata it was emitted in."""

    name: str
    chain_id: int
    block_number: int
    block_timestamp: int
    log_index: int
    params: Mapping[str, Any] = field(default_factory=dict)
    transaction_hash: Optional[str] = None

    @property
    def position(self) -> Tuple[int, int]:
        return self.block_number, self.log_index

    @property
    def dedup_key(self) -> str:
        return f"{self.block_number}_{self.log_index}"

    @property
    def transaction_ref(self) -> str:
        if self.transaction_hash:
            return self.transaction_hash
        return f"{self.chain_id}_{self.block_number}_{self.log_index}"

    def int_param(self, name: str) -> int:
        try:
            return _parse_int(self.params[name])
        except KeyError as exc:
            raise MalformedEventError(f"{self.name} at {self.dedup_key}: missing param {name!r}") from exc
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(
                f"{self.name} at {self.dedup_key}: param {name!r} is not an integer: {self.params[name]!r}"
            ) from exc

    def optional_int_param(self, name: str) -> Optional[int]:
        if self.params.get(name) is None:
            return None
        return self.int_param(name)

    def address_param(self, name: str) -> str:
        try:
            value = self.params[name]
        except KeyError as exc:
            raise MalformedEventError(f"{self.name} at {self.dedup_key}: missing param {name!r}") from exc
        if not value:
            raise MalformedEventError(f"{self.name} at {self.dedup_key}: empty address {name!r}")
        return _db_addr(value)

    def str_param(self, name: str) -> Optional[str]:
        value = self.params.get(name)
        if value is None:
            return None
        if isinstance(value, (bytes, bytearray)):
            return "0x" + bytes(value).hex()
        return str(value)

    def pool_id(self) -> str:
        # Decimal rendering of the on-chain uint256 pool id.
        return str(self.int_param("poolId"))

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChainLog":
        """Build a log from the upstream JSON shape.

        ``{"event": ..., "chainId": ..., "block": {"number", "timestamp"},
        "logIndex": ..., "params": {...}, "transactionHash": ...}``
        """
        try:
            block = payload["block"]
            return cls(
                name=str(payload.get("event") or payload["name"]),
                chain_id=_parse_int(payload["chainId"]),
                block_number=_parse_int(block["number"]),
                block_timestamp=_parse_int(block["timestamp"]),
                log_index=_parse_int(payload["logIndex"]),
                params=dict(payload.get("params") or {}),
                transaction_hash=payload.get("transactionHash"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedEventError(f"cannot read chain log {payload!r}: {exc}") from exc
