# agentrelay/core/process_supervisor.py
"""
Process supervisor for per-turn agent subprocesses.

Owns the registry of in-flight processes keyed by conversation id and
enforces one active process per conversation. The registry check and the
insert happen in the same synchronous call, before any await, so two turns
for the same conversation cannot both pass the check.

The supervisor never reads process output; the turn runner does.
"""

import asyncio
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from agentrelay.core.errors import ConversationBusyError, SpawnError

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_TIMEOUT = 5 * 60  # seconds


@dataclass
class RegistryEntry:
    handle: Any = None
    started_at: float = field(default_factory=time.monotonic)
    cancel_requested: bool = False


class ActiveProcessRegistry:
    """
    Ordered mapping conversation id → live handle + monotonic start time.

    Handles are anything with a ``terminate()`` method. An entry may be
    reserved before its handle exists (spawn in progress).
    """

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, RegistryEntry]" = OrderedDict()

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def ids(self) -> List[str]:
        return list(self._entries)

    def reserve(self, conversation_id: str) -> RegistryEntry:
        if conversation_id in self._entries:
            raise ConversationBusyError(conversation_id)
        entry = RegistryEntry()
        self._entries[conversation_id] = entry
        return entry

    def attach(self, conversation_id: str, handle: Any) -> None:
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = self.reserve(conversation_id)
        entry.handle = handle
        if entry.cancel_requested:
            handle.terminate()

    def get(self, conversation_id: str) -> Any:
        entry = self._entries.get(conversation_id)
        return entry.handle if entry else None

    def started_at(self, conversation_id: str) -> Optional[float]:
        entry = self._entries.get(conversation_id)
        return entry.started_at if entry else None

    def remove(self, conversation_id: str, handle: Any = None) -> bool:
        """
        Remove an entry. With ``handle`` given, only remove it if it still
        belongs to that handle (a retry may already own the slot).
        """
        entry = self._entries.get(conversation_id)
        if entry is None:
            return False
        if handle is not None and entry.handle is not None and entry.handle is not handle:
            return False
        del self._entries[conversation_id]
        return True

    def request_cancel(self, conversation_id: str) -> bool:
        entry = self._entries.get(conversation_id)
        if entry is None:
            return False
        entry.cancel_requested = True
        if entry.handle is not None:
            entry.handle.terminate()
        return True


class SupervisedProcess:
    """A spawned agent process plus its forced-termination timer."""

    def __init__(self, conversation_id: str, process: asyncio.subprocess.Process, binary: str):
        self.conversation_id = conversation_id
        self.process = process
        self.binary = binary
        self.timed_out = False
        self.terminated = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def terminate(self) -> None:
        """Send SIGTERM; a process that already exited is ignored."""
        self.terminated = True
        try:
            self.process.terminate()
        except ProcessLookupError:
            logger.debug(f"Process for {self.conversation_id} already exited")

    async def wait(self) -> int:
        return await self.process.wait()

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ProcessSupervisor:
    """
    Spawns, times out, and terminates agent processes.

    One instance per provider; the registry is injected so instances (and
    tests) never share hidden global state.
    """

    def __init__(
        self,
        registry: Optional[ActiveProcessRegistry] = None,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
    ):
        self.registry = registry if registry is not None else ActiveProcessRegistry()
        self.timeout = timeout

    async def start(
        self,
        conversation_id: str,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> SupervisedProcess:
        """
        Spawn ``argv`` for a conversation.

        Raises:
            ConversationBusyError: an entry already exists for the id
            SpawnError: the binary could not be started
        """
        self.registry.reserve(conversation_id)

        process_env = dict(os.environ)
        if env:
            process_env.update(env)

        binary = argv[0]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd or None,
                env=process_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.registry.remove(conversation_id)
            logger.error(f"Failed to spawn {binary} for {conversation_id}: {e}")
            raise SpawnError(binary, e.strerror or str(e), e.errno) from e

        supervised = SupervisedProcess(conversation_id, process, binary)
        self.registry.attach(conversation_id, supervised)

        loop = asyncio.get_running_loop()
        supervised._timer = loop.call_later(self.timeout, self._on_timeout, conversation_id, supervised)
        logger.info(f"Spawned {binary} (pid={process.pid}) for conversation {conversation_id}")
        return supervised

    def _on_timeout(self, conversation_id: str, supervised: SupervisedProcess) -> None:
        if self.registry.get(conversation_id) is supervised:
            logger.warning(
                f"{supervised.binary} for {conversation_id} exceeded {self.timeout}s, terminating"
            )
            supervised.timed_out = True
            supervised.terminate()

    def release(self, conversation_id: str, supervised: SupervisedProcess) -> None:
        """Deregister after exit; called by the owner of the process."""
        supervised.cancel_timer()
        self.registry.remove(conversation_id, supervised)

    def cancel(self, conversation_id: str) -> bool:
        found = self.registry.request_cancel(conversation_id)
        if found:
            logger.info(f"Cancellation requested for conversation {conversation_id}")
        return found

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self.registry

    def elapsed(self, conversation_id: str) -> Optional[float]:
        started = self.registry.started_at(conversation_id)
        return None if started is None else time.monotonic() - started
