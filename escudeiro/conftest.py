"""
Shared fixtures for the Escudeiro test suite
"""

import socket
import stat
import sys
from pathlib import Path

import pytest

from gateway_server import AppConfig, validate_config


# Stands in for the php CLI: "<stub> <file>" prints a marker naming the file,
# "<stub> -S host:port -t root" serves root verbatim over HTTP. A file whose
# source starts with "SLEEP n" delays the answer by n seconds in both modes.
# Start attempts go to starts.log and one-shot runs to runs.log beside the stub.
STUB_INTERPRETER = r'''
import functools
import http.server
import os
import sys
import time

HERE = os.path.dirname(os.path.abspath(__file__))


def record(log_name, line):
    with open(os.path.join(HERE, log_name), "a") as log:
        log.write(line + "\n")


def delay_for(source):
    if source.startswith(b"SLEEP"):
        time.sleep(float(source.split()[1]))


class SlowableHandler(http.server.SimpleHTTPRequestHandler):
    def do_GET(self):
        try:
            with open(self.translate_path(self.path), "rb") as f:
                delay_for(f.read(64))
        except OSError:
            pass
        super().do_GET()


args = sys.argv[1:]
if args and args[0] == "-S":
    host, port = args[1].rsplit(":", 1)
    root = args[3]
    record("starts.log", "start")
    handler = functools.partial(SlowableHandler, directory=root)
    http.server.ThreadingHTTPServer((host, int(port)), handler).serve_forever()

record("runs.log", os.path.basename(args[0]))
with open(args[0], "rb") as f:
    source = f.read()

if source.startswith(b"FAIL"):
    sys.stderr.write("PHP Fatal error: boom in " + args[0] + "\n")
    sys.exit(255)
delay_for(source)

sys.stdout.write("<p>executed " + os.path.basename(args[0]) + "</p>")
sys.stdout.flush()
'''


def free_port() -> int:
    """Ask the OS for an unused TCP port"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def stub_php(tmp_path) -> Path:
    """Executable fake interpreter writing its logs beside itself"""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "stub_php.py"
    script.write_text(STUB_INTERPRETER)
    wrapper = bin_dir / "php"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


def _log_lines(stub: Path, log_name: str) -> int:
    log = stub.parent / log_name
    if not log.exists():
        return 0
    return len(log.read_text().splitlines())


def start_count(stub: Path) -> int:
    return _log_lines(stub, "starts.log")


def run_count(stub: Path) -> int:
    """Number of one-shot executions the stub has performed"""
    return _log_lines(stub, "runs.log")


@pytest.fixture
def content_root(tmp_path) -> Path:
    """
    A small content tree:

        a.txt
        sub/
            nested.txt
            page.php
        both/
            index.html
            index.php
        phponly/
            index.php
        empty/
    """
    root = tmp_path / "www"
    root.mkdir()
    (root / "a.txt").write_bytes(b"hello from a\n")
    (root / "sub").mkdir()
    (root / "sub" / "nested.txt").write_text("nested")
    (root / "sub" / "page.php").write_text("<?php echo 'sub page'; ?>")
    (root / "both").mkdir()
    (root / "both" / "index.html").write_text("<h1>static index</h1>")
    (root / "both" / "index.php").write_text("<?php echo 'php index'; ?>")
    (root / "phponly").mkdir()
    (root / "phponly" / "index.php").write_text("<?php echo 'php only'; ?>")
    (root / "empty").mkdir()
    return root


def make_config(root: Path, php_binary: Path, mode: str = "oneshot", upstream: str = None, **php) -> AppConfig:
    """Validated configuration for tests"""
    config = AppConfig()
    config.content.root = str(root)
    config.php.binary = str(php_binary)
    config.php.mode = mode
    config.php.port = php.pop("port", None) or free_port()
    config.php.execution_timeout = php.pop("execution_timeout", 10.0)
    config.server.workers = 4
    config.proxy.upstream = upstream
    return validate_config(config)
