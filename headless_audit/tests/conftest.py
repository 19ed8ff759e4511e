"""
Shared fixtures: stand-in renderer and lighthouse executables.

The fake renderer binds the debugging port it is given, drops a file in its
profile dir and records {pid, port, user_data_dir} under $FAKE_RECORD_DIR so
tests can check that both are gone after teardown.

The fake lighthouse waits for $PORT to accept connections and then behaves
according to the audited url: "fail" exits 2 with a message on stderr, "hang"
sleeps, "orphan" sleeps after leaving a detached process holding its output
pipes, "flood" writes a few MB to both streams, anything else prints
"report fmt=<fmt> url=<url>" to stdout.
"""

import glob
import json
import os
import socket
import stat
import sys
import time

import psutil
import pytest

from ..config import Settings

FAKE_RENDERER = """#!{python}
import json, os, signal, socket, sys, time

if os.environ.get("FAKE_RENDERER_IGNORE_TERM"):
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
if os.environ.get("FAKE_RENDERER_EXIT"):
    sys.exit(int(os.environ["FAKE_RENDERER_EXIT"]))

opts = dict(a[2:].split("=", 1) for a in sys.argv[1:] if a.startswith("--") and "=" in a)
port = int(opts["remote-debugging-port"])
data_dir = opts["user-data-dir"]

with open(os.path.join(data_dir, "Local State"), "w") as f:
    f.write("{{}}")

sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
sock.bind(("127.0.0.1", port))
sock.listen(16)

record_dir = os.environ.get("FAKE_RECORD_DIR")
if record_dir:
    record = {{"pid": os.getpid(), "port": port, "user_data_dir": data_dir, "argv": sys.argv[1:]}}
    with open(os.path.join(record_dir, "renderer-%d.json" % port), "w") as f:
        json.dump(record, f)

while True:
    conn, _ = sock.accept()
    conn.close()
"""

FAKE_LIGHTHOUSE = """#!{python}
import os, socket, sys, time

fmt = "html"
positional = []
for arg in sys.argv[1:]:
    if arg.startswith("--output="):
        fmt = arg.split("=", 1)[1]
    elif not arg.startswith("--"):
        positional.append(arg)
url = positional[-1]
port = int(os.environ["PORT"])

sys.stderr.write("lighthouse connecting to port %d (DEBUG_FD=%s)\\n" % (port, os.environ.get("DEBUG_FD")))
for _ in range(100):
    try:
        socket.create_connection(("127.0.0.1", port), timeout=1).close()
        break
    except OSError:
        time.sleep(0.05)
else:
    sys.stderr.write("renderer never came up\\n")
    sys.exit(3)

if "fail" in url:
    sys.stdout.write("partial report")
    sys.stderr.write("audit exploded on %s\\n" % url)
    sys.exit(2)
if "orphan" in url:
    # Detached grandchild keeps the output pipes open after the tree is killed.
    if os.fork() == 0:
        os.setsid()
        if os.fork() == 0:
            time.sleep(5)
        os._exit(0)
    os.wait()
    time.sleep(3600)
if "hang" in url:
    time.sleep(3600)
if "flood" in url:
    chunk = "x" * 65536
    for _ in range(64):
        sys.stdout.write(chunk)
        sys.stderr.write(chunk)
    sys.stdout.flush()
    sys.exit(0)

sys.stdout.write("report fmt=%s url=%s" % (fmt, url))
"""


def _write_executable(path, source: str) -> str:
    path.write_text(source.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture(scope="session")
def fake_bin_dir(tmp_path_factory):
    return tmp_path_factory.mktemp("bin")


@pytest.fixture(scope="session")
def fake_renderer(fake_bin_dir) -> str:
    return _write_executable(fake_bin_dir / "headless_shell", FAKE_RENDERER)


@pytest.fixture(scope="session")
def fake_lighthouse(fake_bin_dir) -> str:
    return _write_executable(fake_bin_dir / "lighthouse", FAKE_LIGHTHOUSE)


@pytest.fixture
def record_dir(tmp_path, monkeypatch) -> str:
    """Directory where the fake renderer records what it started."""
    path = tmp_path / "records"
    path.mkdir()
    monkeypatch.setenv("FAKE_RECORD_DIR", str(path))
    return str(path)


@pytest.fixture
def settings(fake_renderer, fake_lighthouse) -> Settings:
    return Settings(
        headless_bin=fake_renderer,
        lighthouse_bin=fake_lighthouse,
        audit_timeout=20.0,
        kill_grace=2.0,
        max_concurrent=2,
        max_queued=4,
    )


@pytest.fixture
def listening_port():
    """A port with something accepting connections, standing in for a renderer."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(16)
        yield s.getsockname()[1]


def read_records(record_dir: str):
    records = []
    for path in sorted(glob.glob(os.path.join(record_dir, "renderer-*.json"))):
        with open(path) as f:
            records.append(json.load(f))
    return records


def wait_for_record(record_dir: str, port: int, timeout: float = 10.0) -> dict:
    """Block until the fake renderer on `port` has recorded itself."""
    path = os.path.join(record_dir, f"renderer-{port}.json")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if os.path.exists(path):
            try:
                with open(path) as f:
                    return json.load(f)
            except ValueError:
                pass  # partially written
        time.sleep(0.02)
    raise AssertionError(f"renderer on port {port} never came up")


def assert_cleaned_up(records):
    """Every recorded renderer is gone along with its profile directory."""
    assert records, "expected at least one renderer to have started"
    for record in records:
        pid = record["pid"]
        if psutil.pid_exists(pid):
            assert psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        assert not os.path.exists(record["user_data_dir"])
