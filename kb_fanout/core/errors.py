"""
Error taxonomy for event processing.

None of these reach the mutation caller: processors run after the mutation
has already returned. Each class maps to one handling policy.
"""

from __future__ import annotations


class FanoutError(Exception):
    """Base class for fan-out and notification errors."""


class NotFound(FanoutError):
    """Entity vanished between event emission and processing. Skip it."""

    def __init__(self, kind: str, entity_id: object):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class PermissionDenied(FanoutError):
    """Recipient or connection lacks access. Exclude silently."""


class TransientLookupFailure(FanoutError):
    """Datastore hiccup for a single lookup. Log and skip that candidate."""


class DeliveryFailure(FanoutError):
    """Mail hand-off failed. Retried by the delivery worker, logged here."""
