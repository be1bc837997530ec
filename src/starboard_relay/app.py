"""Application bootstrap for Starboard Relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from pathlib import Path
from typing import Any, Mapping

import aiohttp

from .commands import CommandController
from .config_store import ConfigStore
from .deduplication import InFlightGuard
from .discord import DiscordClient
from .engine import StarboardEngine
from .gateway import DiscordGateway, GatewayFatalError
from .models import DeliveryEndpoint, ReactionEvent
from .rotation import EndpointRotator
from .utils import RateLimiter

logger = logging.getLogger(__name__)


class StarboardApp:
    """High level coordinator tying together the gateway, the engine and storage."""

    def __init__(
        self,
        *,
        db_path: Path,
        token: str,
        endpoints: Sequence[DeliveryEndpoint],
        application_id: str | None = None,
        rate_per_second: float = 5.0,
    ):
        self._store = ConfigStore(db_path)
        self._token = token
        self._rotator = EndpointRotator(endpoints)
        self._guard = InFlightGuard()
        self._application_id = application_id
        self._rate = RateLimiter(rate_per_second)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._engine: StarboardEngine | None = None
        self._controller: CommandController | None = None
        self._gateway: DiscordGateway | None = None

    async def run(self) -> None:
        try:
            async with aiohttp.ClientSession() as session:
                client = DiscordClient(session, self._token, rate_limiter=self._rate)
                identity = await client.verify_token()
                if not identity.ok:
                    logger.error("Discord token check failed: %s", identity.error)
                    return
                logger.info("Authenticated as %s", identity.display_name or identity.user_id)

                self._engine = StarboardEngine(
                    settings=self._store,
                    ledger=self._store,
                    messages=client,
                    sender=client,
                    rotator=self._rotator,
                    guard=self._guard,
                )
                gateway = DiscordGateway(
                    session,
                    self._token,
                    on_reaction=self._on_reaction,
                    on_interaction=self._on_interaction,
                    on_ready=self._on_ready,
                )
                self._controller = CommandController(
                    client, self._store, latency=lambda: gateway.latency
                )
                self._gateway = gateway
                if self._application_id:
                    await self._controller.register(self._application_id)

                try:
                    await self._supervise(
                        "discord-gateway", gateway.run, fatal=(GatewayFatalError,)
                    )
                except GatewayFatalError as exc:
                    logger.error("Discord refused the gateway session: %s", exc)
                finally:
                    await gateway.stop()
                    await self._drain_tasks()
        finally:
            self._store.close()

    async def _on_ready(self, data: Mapping[str, Any]) -> None:
        gateway_app_id = self._gateway.application_id if self._gateway is not None else None
        application_id = self._application_id or gateway_app_id
        if application_id and self._controller is not None:
            self._application_id = application_id
            self._spawn(self._controller.register(application_id), "register-commands")

    async def _on_reaction(self, event: ReactionEvent) -> None:
        if self._engine is None:
            return
        self._spawn(self._engine.handle_reaction(event), f"reaction-{event.message_id}")

    async def _on_interaction(self, interaction: Mapping[str, Any]) -> None:
        if self._controller is None:
            return
        self._spawn(
            self._controller.handle_interaction(interaction),
            f"interaction-{interaction.get('id')}",
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed", task.get_name(), exc_info=exc)

    async def _drain_tasks(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
        fatal: tuple[type[Exception], ...] = (),
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except fatal:
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s exited unexpectedly and will be restarted", name)
            await asyncio.sleep(retry_delay)
