"""
Realtime fan-out dispatcher.

Executes FanoutPlans against an injected ConnectionRegistry. Delivery is
best effort and at most once per connection per call; clients that miss a
message resync through the pull API when they reconnect.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable

import structlog

from kb_fanout.schemas.events import ControlAction, EventRecord
from kb_fanout.services.channels import (
    Broadcast,
    ChannelTopologyResolver,
    Control,
    FanoutPlan,
    unique,
)
from kb_fanout.services.interfaces import ConnectionRegistry

log = structlog.get_logger()


class FanoutDispatcher:
    """Pushes event payloads and join/leave controls to live connections."""

    def __init__(self, registry: ConnectionRegistry, resolver: ChannelTopologyResolver) -> None:
        self._registry = registry
        self._resolver = resolver

    async def dispatch(self, event_name: str, topics: Iterable[str], payload: dict[str, Any]) -> None:
        channels = list(unique(topics))
        if not channels:
            return
        await self._registry.broadcast(channels, {"type": event_name, **payload})

    async def send_control(
        self,
        user_id: uuid.UUID,
        action: ControlAction,
        channel: str,
        event_name: str,
    ) -> None:
        """Add or remove `channel` on every connection of one user."""
        if action == ControlAction.JOIN:
            await self._registry.join(user_id, channel)
        else:
            await self._registry.leave(user_id, channel)
        await self._registry.send_to_user(
            user_id, {"type": action.value, "channel": channel, "event": event_name}
        )

    async def send_control_to_channel(
        self,
        target_channel: str,
        action: ControlAction,
        channel: str,
        event_name: str,
    ) -> None:
        """Add or remove `channel` on every connection listening to `target_channel`."""
        message = {"type": action.value, "channel": channel, "event": event_name}
        if action == ControlAction.JOIN:
            await self._registry.join_channel_members(target_channel, channel)
            await self._registry.broadcast([target_channel], message)
        else:
            # Tell them before they stop hearing the target channel
            await self._registry.broadcast([target_channel], message)
            await self._registry.leave_channel_members(target_channel, channel)

    async def execute(self, plan: FanoutPlan) -> None:
        for step in plan.steps:
            if isinstance(step, Broadcast):
                await self.dispatch(step.name, step.channels, step.payload)
            elif isinstance(step, Control):
                if step.user_id is not None:
                    await self.send_control(step.user_id, step.action, step.channel, step.event)
                elif step.target_channel is not None:
                    await self.send_control_to_channel(
                        step.target_channel, step.action, step.channel, step.event
                    )

    async def perform(self, event: EventRecord) -> None:
        """Resolve and deliver one event. Failures are contained to this event."""
        try:
            plan = await self._resolver.resolve(event)
        except Exception:
            log.exception(
                "dispatcher.plan_failed",
                event_name=event.name.value,
                event_id=str(event.id),
            )
            return

        if not plan:
            log.debug("dispatcher.nothing_to_send", event_name=event.name.value, event_id=str(event.id))
            return

        try:
            await self.execute(plan)
        except Exception:
            log.exception(
                "dispatcher.delivery_failed",
                event_name=event.name.value,
                event_id=str(event.id),
            )
            return

        log.debug(
            "dispatcher.delivered",
            event_name=event.name.value,
            event_id=str(event.id),
            topics=list(plan.topics),
            controls=len(plan.controls),
        )
