"""Receipt shapes and versioned decoders for the vault's GoalCreated event.

The vault has emitted two GoalCreated layouts over its lifetime:

- legacy: ``GoalCreated(address,uint256,uint256,uint256)``
- current: ``GoalCreated(address,uint256,uint8,uint256,uint8)``

Both index the owner and the goal id, so the id always sits in ``topics[2]``
(``topics[0]`` is the event signature hash). Decoders are tried in order and
the first match wins; a new contract version only needs a new entry in
``GOAL_CREATED_DECODERS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from web3 import Web3

GOAL_ID_TOPIC_INDEX = 2


def normalize_hex(value: str | bytes) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    text = str(value).strip().lower()
    if not text.startswith("0x"):
        text = f"0x{text}"
    return text


@dataclass(frozen=True)
class ReceiptLog:
    address: str
    topics: tuple[str, ...]
    data: str = "0x"


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    succeeded: bool
    block_number: int | None = None
    logs: tuple[ReceiptLog, ...] = ()


@dataclass(frozen=True)
class GoalCreatedDecoder:
    version: str
    signature: str
    topic: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "topic", normalize_hex(Web3.keccak(text=self.signature)))

    def decode(self, log: ReceiptLog) -> int | None:
        """Return the goal id carried by `log`, or None if the log is another event."""
        if len(log.topics) <= GOAL_ID_TOPIC_INDEX:
            return None
        if normalize_hex(log.topics[0]) != self.topic:
            return None
        try:
            return int(normalize_hex(log.topics[GOAL_ID_TOPIC_INDEX]), 16)
        except ValueError:
            return None


CURRENT_GOAL_CREATED = GoalCreatedDecoder(
    version="current",
    signature="GoalCreated(address,uint256,uint8,uint256,uint8)",
)
LEGACY_GOAL_CREATED = GoalCreatedDecoder(
    version="legacy",
    signature="GoalCreated(address,uint256,uint256,uint256)",
)

GOAL_CREATED_DECODERS: tuple[GoalCreatedDecoder, ...] = (
    CURRENT_GOAL_CREATED,
    LEGACY_GOAL_CREATED,
)


def extract_goal_id(
    logs: Iterable[ReceiptLog],
    *,
    contract_address: str | None = None,
    decoders: tuple[GoalCreatedDecoder, ...] = GOAL_CREATED_DECODERS,
) -> int | None:
    """Scan receipt logs for a GoalCreated event, newest layout first."""
    candidates = list(logs)
    if contract_address:
        expected = normalize_hex(contract_address)
        candidates = [log for log in candidates if normalize_hex(log.address) == expected]

    for decoder in decoders:
        for log in candidates:
            goal_id = decoder.decode(log)
            if goal_id is not None:
                return goal_id
    return None
