"""Observability events emitted by accounts, factories and paymasters."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict

ACCOUNT_CREATED = "AccountCreated"
OWNER_ADDED = "OwnerAdded"
OWNER_REMOVED = "OwnerRemoved"
SPONSORSHIP_GRANTED = "SponsorshipGranted"
USER_OPERATION_EVENT = "UserOperationEvent"


@dataclass(frozen=True)
class ContractEvent:
    """Represents an emitted event. Events never influence authorization."""

    event_type: str
    address: str  # Emitting contract
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
