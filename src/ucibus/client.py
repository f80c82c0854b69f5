"""Request/response client for the command topics.

Responses arrive asynchronously on commands/response/{requestId}. The
client keeps one future per outstanding request id and resolves it from a
single commands/response/+ subscription; each request has its own timeout
and its entry is dropped on timeout or cancellation. Delivery is
at-most-once and nothing is retried.

    async with LocalBus() as bus:
        client = CommandClient(bus)
        await client.start()
        section = await client.create("network", "interface", {"ifname": "eth1"})
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from ucibus.errors import CommandError, NotFoundError

if TYPE_CHECKING:
    from ucibus.acl import Caller
    from ucibus.bus import Bus, Message, Subscription

logger = logging.getLogger("ucibus.client")

RESPONSE_PATTERN = "commands/response/+"


def new_request_id() -> str:
    return uuid.uuid4().hex


class CommandClient:
    def __init__(self, bus: Bus, *, caller: Caller | None = None, timeout: float = 5.0) -> None:
        self.bus = bus
        self.caller = caller
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._subscription: Subscription | None = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = await self.bus.subscribe(RESPONSE_PATTERN, self._on_response, caller=self.caller)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self.bus.unsubscribe(self._subscription)
            self._subscription = None
        for fut in self._pending.values():
            fut.cancel()
        self._pending.clear()

    async def _on_response(self, message: Message) -> None:
        request_id = message.topic.rsplit("/", 1)[-1]
        fut = self._pending.get(request_id)
        if fut is None or fut.done():
            logger.debug("no pending request for response %s", request_id)
            return
        try:
            response = message.json()
        except ValueError as exc:
            fut.set_exception(CommandError(f"malformed response for {request_id}: {exc}"))
            return
        if not isinstance(response, dict):
            fut.set_exception(CommandError(f"malformed response for {request_id}: expected an object"))
            return
        fut.set_result(response)

    async def request(self, command: str, payload: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        """Publish to commands/{command} and wait for the matching response."""
        await self.start()
        request_id = payload.get("requestId") or new_request_id()
        body = {**payload, "requestId": request_id}
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self.bus.publish(f"commands/{command}", body, caller=self.caller)
            return await asyncio.wait_for(fut, timeout or self.timeout)
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------
    # Convenience wrappers (raise on error responses)
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_for_status(response: dict[str, Any]) -> dict[str, Any]:
        if response.get("status") == "success":
            return response
        message = response.get("message", "command failed")
        data = response.get("data") or {}
        error = response.get("error")
        if error == "NotFoundError":
            raise NotFoundError(message, file_name=data.get("fileName"), uuid=data.get("uuid"))
        raise CommandError(message)

    async def create(self, file_name: str, section_name: str, values: dict[str, Any]) -> str:
        """Create a section; returns its new uuid."""
        response = self._raise_for_status(await self.request("edit", {
            "action": "create", "fileName": file_name, "sectionName": section_name, "values": values,
        }))
        return response["data"]["uuid"]

    async def update(self, file_name: str, section_name: str, section_uuid: str, values: dict[str, Any]) -> None:
        self._raise_for_status(await self.request("edit", {
            "action": "update", "fileName": file_name, "sectionName": section_name,
            "uuid": section_uuid, "values": values,
        }))

    async def delete(self, file_name: str, section_name: str, section_uuid: str) -> None:
        self._raise_for_status(await self.request("edit", {
            "action": "delete", "fileName": file_name, "sectionName": section_name, "uuid": section_uuid,
        }))

    async def reload(self, file_name: str) -> int:
        """Reload a file; returns its section count."""
        response = self._raise_for_status(await self.request("reload", {"fileName": file_name}))
        return int(response["data"].get("sections", 0))

    async def validate(self, content: str) -> int:
        """Validate text; returns the section count or raises CommandError with the syntax error."""
        response = await self.request("validate", {"content": content})
        data = response.get("data") or {}
        if not data.get("valid"):
            errors = data.get("errors") or [response.get("message", "invalid")]
            raise CommandError(errors[0])
        return int(data.get("sections", 0))
