#!/usr/bin/env python3
"""
PHP Execution Adapter for Escudeiro

Two ways of running a script coexist:

- one-shot: ``<binary> <file>`` as a subprocess, stdout captured in full and
  returned as the response body;
- persistent: ``<binary> -S host:port -t <root>`` started lazily on the first
  PHP request (when the content root holds a top-level .php file), after
  which requests are proxied to its loopback endpoint.

One-shot execution remains the bootstrap path and the fallback whenever the
persistent interpreter is not available.
"""

import asyncio
import logging
import os
import subprocess
from enum import Enum
from typing import List, Optional

import httpx
from fastapi import Request
from fastapi.responses import Response

from content_resolver import has_top_level_php
from errors import InterpreterError, UpstreamError
from reverse_proxy import ReverseProxy
from worker_pool import WorkerPool

logger = logging.getLogger(__name__)

PHP_MODES = ("persistent", "oneshot")


class InterpreterState(Enum):
    """Lifecycle of the persistent interpreter"""
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


# ============================================================================
# One-shot Execution
# ============================================================================

def run_php_once(binary: str, script_path: str, timeout: Optional[float] = None) -> bytes:
    """
    Execute a script with the interpreter and capture its stdout.

    Runs in a worker thread. Raises InterpreterError on spawn failure,
    non-zero exit or timeout; the message carries the interpreter's own
    error text where it produced one.
    """
    command = [binary, script_path]
    logger.info(f"Executing PHP: {binary} {script_path}")
    try:
        completed = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise InterpreterError(f"Error executing PHP: timed out after {timeout}s", path=script_path)
    except OSError as e:
        raise InterpreterError(f"Error executing PHP: {e}", path=script_path)

    if completed.returncode != 0:
        detail = completed.stderr.decode("utf-8", errors="replace").strip()
        if not detail:
            # The CLI reports fatal errors on stdout unless display_errors=stderr
            detail = completed.stdout.decode("utf-8", errors="replace").strip()
        message = f"Error executing PHP: exit status {completed.returncode}"
        if detail:
            message += f"\n{detail}"
        raise InterpreterError(message, path=script_path)

    return completed.stdout


def sniff_media_type(output: bytes) -> str:
    """Guess a content type for captured interpreter output"""
    head = output[:512].lstrip()
    if head.startswith(b"<"):
        return "text/html; charset=utf-8"
    if b"\x00" in head:
        return "application/octet-stream"
    return "text/plain; charset=utf-8"


# ============================================================================
# Persistent Interpreter
# ============================================================================

class PersistentInterpreter:
    """
    Lazily started PHP built-in server bound to a loopback port.

    The first caller of ensure_started() creates a single start task; every
    concurrent caller awaits that same task and observes the same outcome.
    A failed start is final for the lifetime of the process.
    """

    def __init__(
        self,
        binary: str,
        document_root: str,
        host: str = "127.0.0.1",
        port: int = 8090,
        startup_timeout: float = 5.0,
        request_timeout: Optional[float] = 30.0
    ):
        self.binary = binary
        self.document_root = document_root
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.state = InterpreterState.ABSENT
        self.start_attempts = 0
        self.last_error: Optional[str] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._start_task: Optional[asyncio.Task] = None
        self._proxy: Optional[ReverseProxy] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def command(self) -> List[str]:
        return [self.binary, "-S", self.address, "-t", self.document_root]

    async def ensure_started(self) -> bool:
        """Start the interpreter once; return True if it is running"""
        if self.state is InterpreterState.RUNNING:
            return True
        if self.state is InterpreterState.FAILED:
            return False

        if self._start_task is None:
            self.state = InterpreterState.STARTING
            self._start_task = asyncio.ensure_future(self._start())

        # Shielded so a cancelled request does not abort the start for others
        return await asyncio.shield(self._start_task)

    async def _start(self) -> bool:
        self.start_attempts += 1
        logger.info(f"Starting persistent PHP interpreter: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            return self._fail(f"spawn failed: {e}")

        try:
            await asyncio.wait_for(self._wait_until_ready(), timeout=self.startup_timeout)
        except asyncio.TimeoutError:
            await self._kill()
            return self._fail(f"not accepting connections on {self.address} after {self.startup_timeout}s")
        except InterpreterError as e:
            await self._kill()
            return self._fail(e.message)

        self._proxy = ReverseProxy(
            f"http://{self.address}",
            timeout=self.request_timeout,
            trust_env=False
        )
        self.state = InterpreterState.RUNNING
        logger.info(f"Persistent PHP interpreter running on {self.address} (pid {self._process.pid})")
        return True

    async def _wait_until_ready(self):
        """Poll the loopback port until the interpreter accepts connections"""
        while True:
            if self._process.returncode is not None:
                raise InterpreterError(f"exited during startup with status {self._process.returncode}")
            try:
                _, writer = await asyncio.open_connection(self.host, self.port)
            except OSError:
                await asyncio.sleep(0.05)
                continue
            writer.close()
            await writer.wait_closed()
            return

    def _fail(self, reason: str) -> bool:
        self.state = InterpreterState.FAILED
        self.last_error = reason
        logger.error(f"Persistent PHP interpreter unavailable: {reason}")
        return False

    async def _kill(self):
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        process.kill()
        await process.wait()

    def is_alive(self) -> bool:
        """Check the child is still running; a dead child moves to FAILED"""
        if self.state is not InterpreterState.RUNNING:
            return False
        if self._process is None or self._process.returncode is not None:
            code = None if self._process is None else self._process.returncode
            self._fail(f"exited with status {code}")
            return False
        return True

    async def forward(self, request: Request, script_path: str) -> Response:
        """
        Proxy a request for script_path to the interpreter's endpoint.

        Raises UpstreamError only when no connection could be made, i.e. the
        script was not run. Failures after the request reached the
        interpreter (timeouts included) raise InterpreterError.
        """
        relative = os.path.relpath(script_path, self.document_root).replace(os.sep, "/")
        try:
            return await self._proxy.forward(request, path="/" + relative)
        except UpstreamError as e:
            cause = e.__cause__
            if isinstance(cause, (httpx.ConnectError, httpx.ConnectTimeout)):
                raise
            if isinstance(cause, httpx.TimeoutException):
                message = f"Error executing PHP: timed out after {self.request_timeout}s"
            else:
                message = f"Error executing PHP: {type(cause).__name__}: {cause}"
            raise InterpreterError(message, path=script_path) from cause

    async def terminate(self):
        """Kill the interpreter and reset to ABSENT"""
        if self._start_task is not None and not self._start_task.done():
            await asyncio.wait([self._start_task])
        if self._process is not None:
            logger.info(f"Terminating persistent PHP interpreter (pid {self._process.pid})")
        await self._kill()
        if self._proxy is not None:
            await self._proxy.aclose()
            self._proxy = None
        self._start_task = None
        self.state = InterpreterState.ABSENT


# ============================================================================
# Adapter
# ============================================================================

class PHPAdapter:
    """
    Runs PHP scripts for the dispatcher.

    Args:
        binary: Interpreter executable
        content_root: Content root, also the persistent server's document root
        worker_pool: Pool used for blocking one-shot runs
        interpreter: Persistent interpreter, or None for one-shot only
        execution_timeout: Upper bound for a one-shot run
    """

    def __init__(
        self,
        binary: str,
        content_root: str,
        worker_pool: WorkerPool,
        interpreter: Optional[PersistentInterpreter] = None,
        execution_timeout: Optional[float] = 30.0
    ):
        self.binary = binary
        self.content_root = content_root
        self.worker_pool = worker_pool
        self.interpreter = interpreter
        self.execution_timeout = execution_timeout

    async def execute(self, request: Request, script_path: str) -> Response:
        """Run a script and return its output as a response"""
        interpreter = self.interpreter
        if interpreter is not None:
            state = interpreter.state
            if state is InterpreterState.STARTING or (
                    state is InterpreterState.ABSENT and await has_top_level_php(self.content_root)):
                await interpreter.ensure_started()

            if interpreter.is_alive():
                try:
                    response = await interpreter.forward(request, script_path)
                    logger.info(f"PHP served by persistent interpreter: {script_path}")
                    return response
                except UpstreamError as e:
                    # Connection refused: the script never ran, so one-shot is safe
                    interpreter.is_alive()
                    logger.warning(f"Persistent interpreter unreachable, falling back to one-shot: {e.message}")

        output = await self.run_once(script_path)
        logger.info(f"PHP execution finished: {script_path}")
        return Response(content=output, media_type=sniff_media_type(output))

    async def run_once(self, script_path: str) -> bytes:
        timeout = self.execution_timeout
        result = await self.worker_pool.submit_task(
            f"php:{script_path}",
            run_php_once,
            self.binary,
            script_path,
            timeout,
            # Leave the subprocess timeout to fire first
            timeout=None if timeout is None else timeout + 5.0,
        )
        if not result.success:
            raise InterpreterError(result.error or "Error executing PHP", path=script_path)
        return result.result

    async def shutdown(self):
        if self.interpreter is not None:
            await self.interpreter.terminate()
