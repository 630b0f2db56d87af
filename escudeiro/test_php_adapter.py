#!/usr/bin/env python3
"""
Tests for the php_adapter module
"""

import asyncio

import pytest
from fastapi import Request

from conftest import free_port, run_count, start_count
from errors import InterpreterError, UpstreamError
from php_adapter import (
    InterpreterState,
    PersistentInterpreter,
    run_php_once,
    sniff_media_type,
)


# ============================================================================
# One-shot Execution
# ============================================================================

def test_run_once_captures_stdout(stub_php, content_root):
    output = run_php_once(str(stub_php), str(content_root / "sub" / "page.php"), timeout=10)
    assert output == b"<p>executed page.php</p>"


def test_run_once_reports_interpreter_error(stub_php, tmp_path):
    """Non-zero exit carries the interpreter's own error text"""
    script = tmp_path / "broken.php"
    script.write_text("FAIL")
    with pytest.raises(InterpreterError) as excinfo:
        run_php_once(str(stub_php), str(script), timeout=10)
    assert "exit status 255" in excinfo.value.message
    assert "PHP Fatal error: boom" in excinfo.value.message
    assert excinfo.value.status_code == 500


def test_run_once_missing_binary(tmp_path, content_root):
    with pytest.raises(InterpreterError) as excinfo:
        run_php_once(str(tmp_path / "no-such-php"), str(content_root / "sub" / "page.php"))
    assert excinfo.value.message.startswith("Error executing PHP:")


def test_run_once_times_out(stub_php, tmp_path):
    script = tmp_path / "hang.php"
    script.write_text("SLEEP 5")
    with pytest.raises(InterpreterError) as excinfo:
        run_php_once(str(stub_php), str(script), timeout=0.5)
    assert "timed out" in excinfo.value.message


def test_sniff_media_type():
    assert sniff_media_type(b"  <!DOCTYPE html><p>x</p>").startswith("text/html")
    assert sniff_media_type(b"plain words").startswith("text/plain")
    assert sniff_media_type(b"\x89PNG\x00\x00") == "application/octet-stream"


# ============================================================================
# Persistent Interpreter
# ============================================================================

def get_request(path: str) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 50000),
    })


def test_concurrent_first_use_starts_once(stub_php, content_root):
    """Simultaneous callers share one start attempt and its outcome"""
    interpreter = PersistentInterpreter(str(stub_php), str(content_root), port=free_port())

    async def scenario():
        try:
            outcomes = await asyncio.gather(*[interpreter.ensure_started() for _ in range(8)])
            state = interpreter.state
            return outcomes, state
        finally:
            await interpreter.terminate()

    outcomes, state = asyncio.run(scenario())

    assert outcomes == [True] * 8
    assert state is InterpreterState.RUNNING
    assert interpreter.start_attempts == 1
    assert start_count(stub_php) == 1
    assert interpreter.state is InterpreterState.ABSENT


def test_failed_start_is_shared_and_final(tmp_path, content_root):
    """A spawn failure is observed by every caller and never retried"""
    interpreter = PersistentInterpreter(str(tmp_path / "no-such-php"), str(content_root), port=free_port())

    async def scenario():
        first = await asyncio.gather(*[interpreter.ensure_started() for _ in range(4)])
        second = await interpreter.ensure_started()
        return first, second

    first, second = asyncio.run(scenario())

    assert first == [False] * 4
    assert second is False
    assert interpreter.start_attempts == 1
    assert interpreter.state is InterpreterState.FAILED
    assert "spawn failed" in interpreter.last_error


def test_start_times_out_when_port_never_opens(tmp_path, content_root):
    """A child that never listens is killed and the start fails"""
    sleeper = tmp_path / "sleeper"
    sleeper.write_text("#!/bin/sh\nexec sleep 30\n")
    sleeper.chmod(0o755)
    interpreter = PersistentInterpreter(
        str(sleeper), str(content_root), port=free_port(), startup_timeout=0.5
    )

    started = asyncio.run(interpreter.ensure_started())

    assert started is False
    assert interpreter.state is InterpreterState.FAILED
    assert "not accepting connections" in interpreter.last_error


def test_early_exit_fails_start(tmp_path, content_root):
    quitter = tmp_path / "quitter"
    quitter.write_text("#!/bin/sh\nexit 3\n")
    quitter.chmod(0o755)
    interpreter = PersistentInterpreter(str(quitter), str(content_root), port=free_port())

    assert asyncio.run(interpreter.ensure_started()) is False
    assert "status 3" in interpreter.last_error


def test_terminate_allows_a_fresh_start(stub_php, content_root):
    interpreter = PersistentInterpreter(str(stub_php), str(content_root), port=free_port())

    async def scenario():
        assert await interpreter.ensure_started()
        await interpreter.terminate()
        assert interpreter.state is InterpreterState.ABSENT
        assert await interpreter.ensure_started()
        await interpreter.terminate()

    asyncio.run(scenario())

    assert interpreter.start_attempts == 2
    assert start_count(stub_php) == 2


def test_command_line():
    interpreter = PersistentInterpreter("/opt/php/bin/php", "/srv/www", host="127.0.0.1", port=9123)
    assert interpreter.command == ["/opt/php/bin/php", "-S", "127.0.0.1:9123", "-t", "/srv/www"]


def test_forward_timeout_is_an_interpreter_error(stub_php, content_root):
    """A request the interpreter accepted but did not answer in time is not retried elsewhere"""
    (content_root / "slow.php").write_text("SLEEP 2")
    interpreter = PersistentInterpreter(
        str(stub_php), str(content_root), port=free_port(), request_timeout=0.3
    )

    async def scenario():
        try:
            assert await interpreter.ensure_started()
            with pytest.raises(InterpreterError) as excinfo:
                await interpreter.forward(get_request("/files/slow.php"), str(content_root / "slow.php"))
            return excinfo.value
        finally:
            await interpreter.terminate()

    error = asyncio.run(scenario())

    assert error.message == "Error executing PHP: timed out after 0.3s"
    assert error.status_code == 500
    assert run_count(stub_php) == 0


def test_forward_to_dead_endpoint_stays_upstream_error(stub_php, content_root):
    """Connection failures remain UpstreamError so the adapter may fall back"""
    interpreter = PersistentInterpreter(str(stub_php), str(content_root), port=free_port())

    async def scenario():
        assert await interpreter.ensure_started()
        await interpreter._kill()
        with pytest.raises(UpstreamError):
            await interpreter.forward(get_request("/files/sub/page.php"), str(content_root / "sub" / "page.php"))
        await interpreter.terminate()

    asyncio.run(scenario())
