"""Process transport for stdio tool servers.

One child process per configured server. Messages are JSON documents,
one per line, on the child's stdin/stdout (MCP stdio framing). The
child's stderr is drained into the debug log so a chatty server can
never block on a full pipe.

Lifecycle guarantee: every process started here is terminated by
shutdown()/shutdown_all(), the async context manager exit, or, if
the event loop never got that far, the atexit hook.
"""
from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Any

from .errors import LaunchError, ServerTimeoutError, TransportError
from .models import ServerDescriptor

logger = logging.getLogger(__name__)

# Max bytes of a single framed message.
STREAM_LIMIT = 16 * 1024 * 1024

# PIDs still alive at interpreter exit get SIGKILL.
_LIVE_PIDS: set[int] = set()


def _kill_leftover_processes() -> None:
    for pid in list(_LIVE_PIDS):
        try:
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except (ProcessLookupError, PermissionError, OSError):
            pass
        _LIVE_PIDS.discard(pid)


atexit.register(_kill_leftover_processes)


@dataclass
class ServerProcess:
    """Handle for one launched tool-server process."""
    descriptor: ServerDescriptor
    process: asyncio.subprocess.Process
    closed: bool = False
    _stderr_task: asyncio.Task | None = field(default=None, repr=False)
    _shutdown_task: asyncio.Future | None = field(default=None, repr=False)
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return not self.closed and self.process.returncode is None


class ProcessTransportManager:
    """Starts, talks to, and stops tool-server processes."""

    def __init__(
        self,
        *,
        receive_timeout: float = 60.0,
        launch_grace: float = 0.2,
        shutdown_grace: float = 3.0,
    ) -> None:
        self._receive_timeout = receive_timeout
        self._launch_grace = launch_grace
        self._shutdown_grace = shutdown_grace
        self._handles: dict[int, ServerProcess] = {}

    @property
    def live_handles(self) -> list[ServerProcess]:
        return [h for h in self._handles.values() if h.is_alive]

    async def __aenter__(self) -> ProcessTransportManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown_all()

    async def start(self, descriptor: ServerDescriptor) -> ServerProcess:
        """Spawn the server process and wait out the launch grace period."""
        env = dict(os.environ)
        env.update(descriptor.env)
        try:
            # Argument vector, never a shell string.
            proc = await asyncio.create_subprocess_exec(
                descriptor.command, *descriptor.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise LaunchError(
                descriptor.name, f"command not found: {descriptor.command}",
            ) from exc
        except PermissionError as exc:
            raise LaunchError(
                descriptor.name, f"command not executable: {descriptor.command}",
            ) from exc
        except OSError as exc:
            raise LaunchError(descriptor.name, str(exc)) from exc

        handle = ServerProcess(descriptor=descriptor, process=proc)
        _LIVE_PIDS.add(proc.pid)
        self._handles[proc.pid] = handle
        handle._stderr_task = asyncio.create_task(
            self._drain_stderr(handle),
            name=f"stderr-{descriptor.name}",
        )

        if self._launch_grace > 0:
            try:
                returncode = await asyncio.wait_for(
                    proc.wait(), timeout=self._launch_grace,
                )
            except asyncio.TimeoutError:
                returncode = None
            if returncode is not None:
                await self.shutdown(handle)
                raise LaunchError(
                    descriptor.name,
                    f"process exited immediately (code={returncode})",
                )

        logger.info(
            "Tool server '%s' started (pid=%d): %s %s",
            descriptor.name, proc.pid, descriptor.command,
            " ".join(descriptor.args),
        )
        return handle

    async def send(self, handle: ServerProcess, message: dict[str, Any]) -> None:
        """Write one framed message to the server."""
        if not handle.is_alive or handle.process.stdin is None:
            raise TransportError(handle.name, "channel is closed")
        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        async with handle._write_lock:
            try:
                handle.process.stdin.write(data)
                await handle.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                raise TransportError(handle.name, f"write failed: {exc}") from exc

    async def receive(
        self,
        handle: ServerProcess,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Wait for the next complete JSON object from the server.

        Lines that are not JSON objects are logged and skipped.
        """
        stdout = handle.process.stdout
        if handle.closed or stdout is None:
            raise TransportError(handle.name, "channel is closed")
        wait = self._receive_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ServerTimeoutError(handle.name, wait)
            try:
                line = await asyncio.wait_for(stdout.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                raise ServerTimeoutError(handle.name, wait) from None
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise TransportError(handle.name, f"oversized message: {exc}") from exc
            except (ConnectionResetError, BrokenPipeError) as exc:
                raise TransportError(handle.name, f"read failed: {exc}") from exc

            if not line:
                returncode = handle.process.returncode
                if returncode is None:
                    try:
                        returncode = await asyncio.wait_for(
                            handle.process.wait(), timeout=0.5,
                        )
                    except asyncio.TimeoutError:
                        pass
                raise TransportError(
                    handle.name,
                    f"server closed its output (exit code={returncode})",
                )

            try:
                message = json.loads(line.decode("utf-8", errors="replace"))
            except json.JSONDecodeError:
                logger.debug(
                    "Skipping non-JSON line from '%s': %r", handle.name, line[:200],
                )
                continue
            if not isinstance(message, dict):
                logger.debug(
                    "Skipping non-object message from '%s': %r",
                    handle.name, message,
                )
                continue
            return message

    async def shutdown(self, handle: ServerProcess) -> None:
        """Ask the server to exit, then escalate to SIGTERM and SIGKILL.

        Idempotent. Concurrent callers share one shutdown sequence, and a
        cancelled caller does not interrupt it.
        """
        if handle._shutdown_task is None:
            handle.closed = True
            handle._shutdown_task = asyncio.ensure_future(self._terminate(handle))
        await asyncio.shield(handle._shutdown_task)

    async def _terminate(self, handle: ServerProcess) -> None:
        proc = handle.process
        try:
            if proc.returncode is None:
                if proc.stdin is not None and not proc.stdin.is_closing():
                    proc.stdin.close()
                if not await self._wait_exit(proc):
                    proc.terminate()
                    if not await self._wait_exit(proc):
                        logger.warning(
                            "Tool server '%s' ignored SIGTERM; killing (pid=%d)",
                            handle.name, proc.pid,
                        )
                        proc.kill()
                        await proc.wait()
            logger.info(
                "Tool server '%s' stopped (pid=%d, code=%s)",
                handle.name, proc.pid, proc.returncode,
            )
        except ProcessLookupError:
            pass
        finally:
            _LIVE_PIDS.discard(proc.pid)
            self._handles.pop(proc.pid, None)
            if handle._stderr_task is not None:
                handle._stderr_task.cancel()

    async def shutdown_all(self) -> None:
        handles = list(self._handles.values())
        if not handles:
            return
        await asyncio.gather(
            *(self.shutdown(h) for h in handles), return_exceptions=True,
        )

    async def _wait_exit(self, proc: asyncio.subprocess.Process) -> bool:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._shutdown_grace)
            return True
        except asyncio.TimeoutError:
            return False

    @staticmethod
    async def _drain_stderr(handle: ServerProcess) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return
        try:
            while True:
                line = await stderr.readline()
                if not line:
                    return
                logger.debug(
                    "[%s stderr] %s",
                    handle.name, line.decode("utf-8", errors="replace").rstrip(),
                )
        except ConnectionResetError:
            return
        except ValueError:
            # Line exceeded the stream limit; stop forwarding.
            return
