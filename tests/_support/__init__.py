"""
Test support utilities for district-spine tests.

Helpers that don't fit as pytest fixtures. Fakes for the collection
service and the cloud SDKs live in :mod:`tests._support.fakes`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any:
    """Parse a JSON file written by a local backend."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def assert_dict_subset(actual: dict, expected: dict, path: str = "") -> None:
    """
    Assert that expected is a subset of actual (recursive).

    Useful for checking persisted records where timestamps and sizes
    vary between runs.

    Args:
        actual: The full dictionary
        expected: The expected subset
        path: Current path (for error messages)
    """
    for key, expected_value in expected.items():
        current_path = f"{path}.{key}" if path else key

        assert key in actual, f"Missing key at {current_path}"
        actual_value = actual[key]

        if isinstance(expected_value, dict) and isinstance(actual_value, dict):
            assert_dict_subset(actual_value, expected_value, current_path)
        elif isinstance(expected_value, list) and isinstance(actual_value, list):
            assert len(actual_value) >= len(expected_value), (
                f"List at {current_path} too short: "
                f"expected at least {len(expected_value)}, got {len(actual_value)}"
            )
            for i, (exp_item, act_item) in enumerate(zip(expected_value, actual_value)):
                if isinstance(exp_item, dict) and isinstance(act_item, dict):
                    assert_dict_subset(act_item, exp_item, f"{current_path}[{i}]")
                else:
                    assert act_item == exp_item, (
                        f"Mismatch at {current_path}[{i}]: "
                        f"expected {exp_item!r}, got {act_item!r}"
                    )
        else:
            assert actual_value == expected_value, (
                f"Mismatch at {current_path}: "
                f"expected {expected_value!r}, got {actual_value!r}"
            )
