"""Subset of the vault contract ABI consumed by the ledger client."""

from __future__ import annotations

from typing import Any


def _inputs(*pairs: tuple[str, str]) -> list[dict[str, Any]]:
    return [{"name": name, "type": abi_type} for name, abi_type in pairs]


def _function(
    name: str,
    inputs: list[dict[str, Any]],
    outputs: list[dict[str, Any]],
    mutability: str,
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs,
        "stateMutability": mutability,
    }


VAULT_ABI: list[dict[str, Any]] = [
    _function(
        "createGoal",
        _inputs(
            ("goalType", "uint8"),
            ("targetValue", "uint256"),
            ("currency", "uint8"),
            ("unlockTimestamp", "uint256"),
            ("description", "string"),
        ),
        [],
        "nonpayable",
    ),
    _function(
        "createGoalLegacy",
        _inputs(
            ("goal", "uint256"),
            ("unlockTimestamp", "uint256"),
            ("description", "string"),
        ),
        [],
        "nonpayable",
    ),
    _function(
        "deposit",
        _inputs(("token", "address"), ("goalId", "uint256")),
        [],
        "payable",
    ),
    _function("withdraw", _inputs(("goalId", "uint256")), [], "nonpayable"),
    _function(
        "withdrawEarly",
        _inputs(("goalId", "uint256"), ("amount", "uint256")),
        [],
        "nonpayable",
    ),
    _function(
        "getGoalDetails",
        _inputs(("goalId", "uint256")),
        _inputs(
            ("owner", "address"),
            ("balance", "uint256"),
            ("goalType", "uint8"),
            ("targetValue", "uint256"),
            ("currency", "uint8"),
            ("unlockTimestamp", "uint256"),
            ("isActive", "bool"),
            ("description", "string"),
        ),
        "view",
    ),
    _function(
        "getGoalProgress",
        _inputs(("goalId", "uint256")),
        _inputs(("progress", "uint256")),
        "view",
    ),
    _function(
        "canWithdraw",
        _inputs(("goalId", "uint256")),
        _inputs(("allowed", "bool"), ("reason", "string")),
        "view",
    ),
    _function(
        "isGoalReached",
        _inputs(("goalId", "uint256")),
        _inputs(("reached", "bool")),
        "view",
    ),
    _function(
        "getUserGoals",
        _inputs(("user", "address")),
        _inputs(("goalIds", "uint256[]")),
        "view",
    ),
    {
        "type": "event",
        "name": "GoalCreated",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "goalId", "type": "uint256", "indexed": True},
            {"name": "goalType", "type": "uint8", "indexed": False},
            {"name": "targetValue", "type": "uint256", "indexed": False},
            {"name": "currency", "type": "uint8", "indexed": False},
        ],
    },
]
