"""Shared test configuration."""

from __future__ import annotations

import copy
from typing import Any, Dict

import pytest


BASE_ACCOUNT: Dict[str, Any] = {
    "fromName": "Support Bot",
    "fromAddress": "bot@example.com",
    "imap": {
        "host": "imap.example.com",
        "port": 993,
        "secure": True,
        "user": "bot@example.com",
        "password": "imap-secret",
    },
    "smtp": {
        "host": "smtp.example.com",
        "port": 587,
        "secure": False,
        "user": "bot@example.com",
        "password": "smtp-secret",
    },
    "pollInterval": 30000,
    "allowFrom": [],
}


@pytest.fixture
def account_config() -> Dict[str, Any]:
    """Single-account email section (a deep copy, safe to mutate)."""
    return copy.deepcopy(BASE_ACCOUNT)


@pytest.fixture
def host_config(account_config: Dict[str, Any]) -> Dict[str, Any]:
    """Host configuration with one ``default`` account under ``channels.email``."""
    return {"channels": {"email": account_config}}


@pytest.fixture
def multi_account_config(account_config: Dict[str, Any]) -> Dict[str, Any]:
    work = copy.deepcopy(account_config)
    work["fromAddress"] = "work@corp.example"
    work["imap"]["user"] = "work@corp.example"
    work["smtp"]["user"] = "work@corp.example"
    return {
        "channels": {
            "email": {
                "accounts": {
                    "personal": account_config,
                    "work": work,
                    "draft": {"fromAddress": "draft@example.com"},
                }
            }
        }
    }
