"""Per-account runtime status published to the host status sink."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mailbridge.configuration import DEFAULT_ACCOUNT_ID

from .connection_manager import ConnectionState


def now_ms() -> int:
    return int(time.time() * 1000)


class AccountStatus(BaseModel):
    """Snapshot of one account's poller. Timestamps are epoch milliseconds."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: str = DEFAULT_ACCOUNT_ID
    from_address: Optional[str] = None
    running: bool = False
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_start_at: Optional[int] = None
    last_stop_at: Optional[int] = None
    last_error: Optional[str] = None
    last_inbound_at: Optional[int] = None
    last_outbound_at: Optional[int] = None
    messages_processed: int = Field(default=0, ge=0)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


__all__ = ["AccountStatus", "now_ms"]
