"""
Supervisor for the cloudflared quick-tunnel subprocess.

At most one tunnel process exists at a time. Its public URL is not known
up front: cloudflared prints it somewhere in its log output, on stdout or
stderr depending on version, so both streams are scanned.

State machine::

    stopped --start--> starting --(URL observed)--> running
    starting/running --(stop or process exit)--> stopped

Reader and watcher tasks never touch the tunnel state themselves. They put
events on a queue that one supervising task per process drains; that task
and the public start/stop calls are the only writers, all under one lock.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any

from errors import ExecutableNotFound, SpawnFailed, TunnelError

logger = logging.getLogger(__name__)

STOPPED = "stopped"
STARTING = "starting"
RUNNING = "running"

# Quick tunnels are served from this domain
TUNNEL_HOST_MARKER = "trycloudflare.com"
TRAILING_PUNCTUATION = ".,;:!?)]}>|'\""

OUTPUT_CHUNK_SIZE = 4096

URL_OBSERVED = "url_observed"
PROCESS_EXITED = "process_exited"


def extract_tunnel_url(text: str) -> str | None:
    """
    Find the public tunnel URL in a piece of cloudflared output.

    Only text mentioning the quick-tunnel domain is considered. The URL is
    the first ``https://`` substring up to the next whitespace, with
    trailing punctuation removed.
    """
    if TUNNEL_HOST_MARKER not in text:
        return None
    start = text.find("https://")
    if start == -1:
        return None
    url = text[start:].split(maxsplit=1)[0].rstrip(TRAILING_PUNCTUATION)
    return url or None


def app_dir() -> Path:
    """Directory of the program that was launched (``sys.argv[0]``)."""
    if sys.argv and sys.argv[0]:
        return Path(sys.argv[0]).resolve().parent
    return Path.cwd()


def default_search_paths(platform: str = sys.platform) -> list[Path]:
    """
    Known install locations of cloudflared, in lookup order.

    Absolute paths only: PATH lookup is avoided because it is unreliable
    on some targets (e.g. Termux on Android).
    """
    if platform == "win32":
        # Next to the launched script or console-script shim, then the cwd
        return [
            app_dir() / "cloudflared.exe",
            Path.cwd() / "cloudflared.exe",
        ]
    return [
        Path("/data/data/com.termux/files/usr/bin/cloudflared"),
        Path("/usr/bin/cloudflared"),
        Path("/usr/local/bin/cloudflared"),
        Path("/opt/homebrew/bin/cloudflared"),
    ]


def _spawn_kwargs() -> dict[str, Any]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


class TunnelSupervisor:
    """Owns the lifecycle of the tunnel subprocess and its status record."""

    def __init__(
        self,
        port: int,
        executable: str | Path | None = None,
        search_paths: list[Path] | None = None,
    ):
        """
        Args:
            port: Local gateway port the tunnel should expose
            executable: Explicit cloudflared path, checked before the defaults
            search_paths: Override for the platform default search list
        """
        self.port = port
        paths = list(search_paths) if search_paths is not None else default_search_paths()
        if executable:
            paths.insert(0, Path(executable))
        self.search_paths = paths

        self._status = STOPPED
        self._url = ""
        self._process: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    def status(self) -> dict[str, str]:
        """Current ``{url, status}``; never waits on the lock."""
        return {"url": self._url, "status": self._status}

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    def locate_executable(self) -> Path:
        for candidate in self.search_paths:
            if candidate.is_file():
                return candidate
        searched = ", ".join(str(p) for p in self.search_paths)
        raise ExecutableNotFound(
            f"cloudflared not found (looked in: {searched}). "
            "Install it, e.g. with: pkg install cloudflared"
        )

    def command(self, executable: Path) -> list[str]:
        return [str(executable), "tunnel", "--url", f"http://localhost:{self.port}"]

    async def start(self) -> dict[str, Any]:
        """
        Start the tunnel unless one already exists.

        Returns immediately after spawning; the URL shows up in ``status()``
        once cloudflared reports it.

        Returns:
            ``{success, status, url}`` or ``{success: False, status, error}``
        """
        async with self._lock:
            if self._process is not None:
                return {"success": True, **self.status()}

            try:
                executable = self.locate_executable()
                self._status = STARTING
                process = await self._spawn(executable)
            except TunnelError as e:
                self._status = STOPPED
                logger.error(f"Tunnel start failed: {e}")
                return {"success": False, "status": STOPPED, "error": str(e)}

            self._process = process
            task = asyncio.create_task(self._supervise(process))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.info(f"Started cloudflared (pid {process.pid}) for port {self.port}")
        return {"success": True, "status": STARTING, "url": ""}

    async def stop(self) -> bool:
        """Kill the tunnel process, if any, and mark the tunnel stopped."""
        async with self._lock:
            process = self._process
            self._process = None
            self._url = ""
            self._status = STOPPED
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                logger.info(f"Stopped cloudflared (pid {process.pid})")
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the tunnel and wait for supervising tasks to wind down."""
        await self.stop()
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    async def _spawn(self, executable: Path) -> asyncio.subprocess.Process:
        cmd = self.command(executable)
        logger.info(f"Using cloudflared at: {executable}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_spawn_kwargs(),
            )
        except (OSError, ValueError) as e:
            raise SpawnFailed(f"Failed to start cloudflared: {e}") from e

    async def _supervise(self, process: asyncio.subprocess.Process) -> None:
        """Apply reader/watcher events for ``process`` until it exits."""
        events: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        workers = [
            asyncio.create_task(self._scan_output(process.stdout, "stdout", events)),
            asyncio.create_task(self._scan_output(process.stderr, "stderr", events)),
            asyncio.create_task(self._wait_for_exit(process, events)),
        ]
        try:
            while True:
                kind, value = await events.get()
                if kind == URL_OBSERVED:
                    await self._mark_running(process, value)
                elif kind == PROCESS_EXITED:
                    await self._mark_stopped(process, value)
                    break
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _scan_output(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        events: asyncio.Queue[tuple[str, str]],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(OUTPUT_CHUNK_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            if len(pending) > OUTPUT_CHUNK_SIZE:
                lines.append(pending)
                pending = ""
            for line in lines:
                self._observe(line, name, events)
        pending += decoder.decode(b"", final=True)
        if pending:
            self._observe(pending, name, events)

    def _observe(self, line: str, name: str, events: asyncio.Queue[tuple[str, str]]) -> None:
        line = line.rstrip()
        if not line:
            return
        logger.info(f"cloudflared ({name}): {line}")
        url = extract_tunnel_url(line)
        if url:
            events.put_nowait((URL_OBSERVED, url))

    async def _wait_for_exit(
        self, process: asyncio.subprocess.Process, events: asyncio.Queue[tuple[str, str]]
    ) -> None:
        returncode = await process.wait()
        events.put_nowait((PROCESS_EXITED, str(returncode)))

    async def _mark_running(self, process: asyncio.subprocess.Process, url: str) -> None:
        async with self._lock:
            # Events from a process that was stopped or replaced are stale
            if self._process is not process:
                return
            self._url = url
            self._status = RUNNING
        logger.info(f"Tunnel URL: {url}")

    async def _mark_stopped(self, process: asyncio.subprocess.Process, returncode: str) -> None:
        async with self._lock:
            if self._process is not process:
                return
            self._process = None
            self._url = ""
            self._status = STOPPED
        logger.info(f"cloudflared exited (code {returncode}), tunnel stopped")
